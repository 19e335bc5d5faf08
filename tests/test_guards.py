"""Tests for the require_permission, require_module and require_feature dependencies."""

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from app.core.database.engine import get_db
from app.features.permissions.dependencies import (
    get_access_resolver,
    require_any_permission,
    require_feature,
    require_module,
    require_permission,
)
from app.features.permissions.resolver import AccessResolver, FeatureRule, ModuleRule, Visibility
from conftest import ALLOW, as_user, role_grant


def build_app():
    app = FastAPI()

    @app.post("/orders", dependencies=[Depends(require_permission("orders", "create"))])
    async def create_order():
        return {"ok": True}

    @app.get("/orders", dependencies=[Depends(require_any_permission([("orders", "read"), ("quotes", "read")]))])
    async def list_orders():
        return {"ok": True}

    @app.get("/reports", dependencies=[Depends(require_module("reports"))])
    async def reports():
        return {"ok": True}

    @app.get("/ai", dependencies=[Depends(require_feature("AI_TOOLS"))])
    async def ai():
        return {"ok": True}

    return app


@pytest.fixture
async def guarded(session_factory, store):
    """Client for a guarded app whose resolver reads the fake store."""
    app = build_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_access_resolver] = lambda: AccessResolver(store)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestRequirePermission:
    """Capability guard."""

    async def test_denied_without_grant(self, guarded, make_user):
        user = await make_user()
        response = await guarded.post("/orders", headers=as_user(user))
        assert response.status_code == 403
        assert response.json()["detail"] == "Permission denied: create on orders"

    async def test_allowed_with_role_flag(self, guarded, store, make_user):
        user = await make_user()
        store.grant(user.id, role_grants=[role_grant("STAFF", "orders", create=True)])

        response = await guarded.post("/orders", headers=as_user(user))

        assert response.status_code == 200

    async def test_admin_bypasses_capability_guard(self, guarded, make_user):
        admin = await make_user(is_admin=True)
        response = await guarded.post("/orders", headers=as_user(admin))
        assert response.status_code == 200

    async def test_any_permission(self, guarded, store, make_user):
        user = await make_user()
        store.grant(user.id, groups={"quotes": ALLOW})

        response = await guarded.get("/orders", headers=as_user(user))

        assert response.status_code == 200

    async def test_requires_principal(self, guarded):
        response = await guarded.post("/orders")
        assert response.status_code == 401


class TestRequireModule:
    """Module guard."""

    async def test_disabled_module_blocks_admin(self, guarded, store, make_user):
        admin = await make_user(is_admin=True)
        store.modules["reports"] = ModuleRule("reports", is_enabled=False)

        response = await guarded.get("/reports", headers=as_user(admin))

        assert response.status_code == 403

    async def test_unconfigured_module_blocks(self, guarded, make_user):
        user = await make_user()
        response = await guarded.get("/reports", headers=as_user(user))
        assert response.status_code == 403

    async def test_required_role(self, guarded, store, make_user):
        user = await make_user()
        store.modules["reports"] = ModuleRule("reports", is_enabled=True, required_role="BRANCH_MANAGER")
        store.grant(user.id, roles=["BRANCH_MANAGER"])

        response = await guarded.get("/reports", headers=as_user(user))

        assert response.status_code == 200


class TestRequireFeature:
    """Feature guard."""

    async def test_restricted_reports_threshold(self, guarded, store, make_user):
        user = await make_user()
        store.feature_rules[(None, "AI_TOOLS")] = FeatureRule("AI_TOOLS", Visibility.RESTRICTED, 50)
        store.completion[user.id] = 30

        response = await guarded.get("/ai", headers=as_user(user))

        assert response.status_code == 403
        assert "50%" in response.json()["detail"]

    async def test_no_rule_is_visible(self, guarded, make_user):
        user = await make_user()
        response = await guarded.get("/ai", headers=as_user(user))
        assert response.status_code == 200
