"""HTTP tests for the permission and user routes."""

import pytest

from app.features.permissions.models import PermissionGroup
from conftest import as_user


@pytest.fixture
async def admin(make_user):
    return await make_user(is_admin=True)


@pytest.fixture
async def member(make_user):
    return await make_user(completion_percent=30)


async def create_capability(client, admin, code="orders"):
    response = await client.post(
        "/permissions/capabilities",
        json={"code": code, "name": code.title(), "module": code},
        headers=as_user(admin),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def create_role(client, admin, code="VIEWER", **extra):
    response = await client.post(
        "/permissions/roles",
        json={"code": code, "name": code.title(), **extra},
        headers=as_user(admin),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def check(client, caller, capability_code, action, **extra):
    response = await client.post(
        "/permissions/check",
        json={"capability_code": capability_code, "action": action, **extra},
        headers=as_user(caller),
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestIdentity:
    """Tests for principal header handling."""

    async def test_missing_header(self, client):
        response = await client.get("/users/me")
        assert response.status_code == 401

    async def test_unknown_principal(self, client):
        response = await client.get("/users/me", headers={"X-User-Id": "nobody"})
        assert response.status_code == 401

    async def test_deactivated_principal(self, client, make_user):
        user = await make_user(is_active=False)
        response = await client.get("/users/me", headers=as_user(user))
        assert response.status_code == 403

    async def test_me(self, client, member):
        response = await client.get("/users/me", headers=as_user(member))
        assert response.status_code == 200
        assert response.json()["completion_percent"] == 30


class TestAdminOnly:
    """Mutations require admin privileges."""

    async def test_member_cannot_create_role(self, client, member):
        response = await client.post(
            "/permissions/roles", json={"code": "X", "name": "X"}, headers=as_user(member)
        )
        assert response.status_code == 403

    async def test_validation_errors_are_flattened(self, client, admin):
        response = await client.post("/permissions/roles", json={"name": "No code"}, headers=as_user(admin))
        assert response.status_code == 400
        assert "code" in response.json()

    async def test_duplicate_capability_conflicts(self, client, admin):
        await create_capability(client, admin)
        response = await client.post(
            "/permissions/capabilities",
            json={"code": "orders", "name": "Orders", "module": "orders"},
            headers=as_user(admin),
        )
        assert response.status_code == 409


class TestRoleLifecycle:
    """Role grants, assignment and deletion rules."""

    async def test_grant_defaults_to_read_only(self, client, admin, member):
        capability = await create_capability(client, admin)
        role = await create_role(client, admin)

        response = await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": capability["id"]},
            headers=as_user(admin),
        )
        assert response.status_code == 200, response.text
        grant = response.json()
        assert grant["can_read"] is True
        assert grant["can_create"] is False
        assert grant["capability"]["code"] == "orders"

        response = await client.post(
            f"/permissions/users/{member.id}/roles", json={"role_id": role["id"]}, headers=as_user(admin)
        )
        assert response.status_code == 200, response.text
        assert response.json()["role"]["code"] == "VIEWER"

        read = await check(client, member, "orders", "view")
        assert read["has_permission"] is True
        assert read["source"] == "role"

        create = await check(client, member, "orders", "create")
        assert create["has_permission"] is False
        assert create["decision"] == "DENIED"
        assert create["denied_by"] == "capability"

    async def test_role_with_grants(self, client, admin):
        capability = await create_capability(client, admin)
        role = await create_role(client, admin)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": capability["id"], "can_update": True},
            headers=as_user(admin),
        )

        response = await client.get(f"/permissions/roles/{role['id']}", headers=as_user(admin))

        assert response.status_code == 200
        grants = response.json()["grants"]
        assert len(grants) == 1
        assert grants[0]["can_update"] is True

    async def test_system_role_cannot_be_deleted(self, client, admin):
        role = await create_role(client, admin, code="STAFF", is_system=True)

        response = await client.delete(f"/permissions/roles/{role['id']}", headers=as_user(admin))

        assert response.status_code == 403

    async def test_assigned_role_cannot_be_deleted(self, client, admin, member):
        role = await create_role(client, admin, code="CLERK")
        await client.post(
            f"/permissions/users/{member.id}/roles", json={"role_id": role["id"]}, headers=as_user(admin)
        )

        response = await client.delete(f"/permissions/roles/{role['id']}", headers=as_user(admin))
        assert response.status_code == 409

        response = await client.delete(
            f"/permissions/users/{member.id}/roles/{role['id']}", headers=as_user(admin)
        )
        assert response.status_code == 204

        response = await client.delete(f"/permissions/roles/{role['id']}", headers=as_user(admin))
        assert response.status_code == 204

        listed = await client.get("/permissions/roles", headers=as_user(admin))
        assert role["id"] not in [r["id"] for r in listed.json()]

    async def test_super_admin_grants_cannot_be_revoked(self, client, admin):
        capability = await create_capability(client, admin)
        role = await create_role(client, admin, code="SUPER_ADMIN", is_system=True)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": capability["id"], "can_delete": True},
            headers=as_user(admin),
        )

        response = await client.delete(
            f"/permissions/roles/{role['id']}/capabilities/{capability['id']}", headers=as_user(admin)
        )

        assert response.status_code == 403


class TestGroupsAndOverrides:
    """Group effects and overrides through the API."""

    async def test_group_allow_then_override_deny(self, client, admin, member):
        capability = await create_capability(client, admin)
        response = await client.post(
            "/permissions/groups", json={"code": "SALES", "name": "Sales"}, headers=as_user(admin)
        )
        group = response.json()
        await client.put(
            f"/permissions/groups/{group['id']}/capabilities",
            json={"capability_id": capability["id"]},
            headers=as_user(admin),
        )
        await client.post(
            f"/permissions/groups/{group['id']}/users", json={"user_id": member.id}, headers=as_user(admin)
        )

        result = await check(client, member, "orders", "delete")
        assert result["has_permission"] is True
        assert result["source"] == "group"

        response = await client.put(
            f"/permissions/users/{member.id}/overrides",
            json={"capability_id": capability["id"], "effect": "DENY", "reason": "Chargeback review"},
            headers=as_user(admin),
        )
        assert response.status_code == 200, response.text
        assert response.json()["assigned_by_id"] == admin.id

        result = await check(client, member, "orders", "read")
        assert result["has_permission"] is False
        assert result["source"] == "override"

    async def test_system_default_group_cannot_be_deleted(self, client, db, admin):
        group = PermissionGroup(code="DEFAULT_ADMIN", name="Default Admin", is_system_default=True)
        db.add(group)
        await db.commit()

        response = await client.delete(f"/permissions/groups/{group.id}", headers=as_user(admin))

        assert response.status_code == 403


class TestChecks:
    """Check, effective and snapshot endpoints."""

    async def test_member_cannot_inspect_others(self, client, admin, member):
        response = await client.get(f"/permissions/users/{admin.id}/snapshot", headers=as_user(member))
        assert response.status_code == 403

        response = await client.post(
            "/permissions/check",
            json={"capability_code": "orders", "user_id": admin.id},
            headers=as_user(member),
        )
        assert response.status_code == 403

    async def test_unknown_capability_is_unresolvable(self, client, member):
        result = await check(client, member, "orders", "read")
        assert result["has_permission"] is False
        assert result["decision"] == "UNRESOLVABLE"

    async def test_effective_and_snapshot(self, client, admin, member):
        capability = await create_capability(client, admin)
        await client.put(
            f"/permissions/users/{member.id}/overrides",
            json={"capability_id": capability["id"], "effect": "ALLOW"},
            headers=as_user(admin),
        )

        effective = await client.get(f"/permissions/users/{member.id}/effective", headers=as_user(member))
        assert effective.status_code == 200
        assert effective.json()["permissions"] == [{
            "capability_code": "orders",
            "source": "override",
            "allowed": True,
            "can_create": None,
            "can_read": None,
            "can_update": None,
            "can_delete": None,
        }]

        snapshot = await client.get(
            f"/permissions/users/{member.id}/snapshot",
            params={"features": ["AI_TOOLS"]},
            headers=as_user(member),
        )
        assert snapshot.status_code == 200
        body = snapshot.json()
        assert body["permissions"] == ["orders"]
        assert body["features"]["AI_TOOLS"]["allowed"] is True


class TestModulesAndFeatures:
    """Module switches and feature visibility."""

    async def test_module_required_role_and_disable(self, client, admin, member):
        response = await client.post(
            "/permissions/modules",
            json={"module_key": "reports", "name": "Reports", "required_role": "BRANCH_MANAGER"},
            headers=as_user(admin),
        )
        assert response.status_code == 201

        access = await client.get("/permissions/modules/reports/access", headers=as_user(member))
        assert access.json() == {"module_key": "reports", "allowed": False, "decision": "DENIED"}

        await client.put(
            "/permissions/modules/reports", json={"required_role": None}, headers=as_user(admin)
        )
        access = await client.get("/permissions/modules/reports/access", headers=as_user(member))
        assert access.json()["allowed"] is True

        await client.put("/permissions/modules/reports", json={"is_enabled": False}, headers=as_user(admin))
        access = await client.get("/permissions/modules/reports/access", headers=as_user(admin))
        assert access.json()["allowed"] is False

    async def test_unknown_module(self, client, member):
        access = await client.get("/permissions/modules/ads/access", headers=as_user(member))
        assert access.json()["decision"] == "UNRESOLVABLE"

    async def test_restricted_requires_threshold(self, client, admin):
        response = await client.put(
            "/permissions/features",
            json={"feature_code": "AI_TOOLS", "visibility": "RESTRICTED"},
            headers=as_user(admin),
        )
        assert response.status_code == 400

    async def test_restricted_feature_and_user_rule(self, client, admin, member):
        response = await client.put(
            "/permissions/features",
            json={"feature_code": "AI_TOOLS", "visibility": "RESTRICTED", "required_profile_percent": 50},
            headers=as_user(admin),
        )
        assert response.status_code == 200, response.text

        access = await client.get("/permissions/features/AI_TOOLS/access", headers=as_user(member))
        assert access.json()["allowed"] is False
        assert access.json()["required_profile_percent"] == 50

        await client.put(
            f"/permissions/users/{member.id}/features",
            json={"feature_code": "AI_TOOLS", "visibility": "SHOW"},
            headers=as_user(admin),
        )
        access = await client.get("/permissions/features/AI_TOOLS/access", headers=as_user(member))
        assert access.json()["allowed"] is True

        await client.patch(f"/users/{member.id}", json={"completion_percent": 80}, headers=as_user(admin))
        await client.delete(f"/permissions/users/{member.id}/features/AI_TOOLS", headers=as_user(admin))
        access = await client.get("/permissions/features/AI_TOOLS/access", headers=as_user(member))
        assert access.json()["allowed"] is True


class TestAuditLog:
    """Admin mutations are written to the audit log."""

    async def test_role_creation_is_audited(self, client, admin):
        role = await create_role(client, admin, code="AUDITED")

        response = await client.get(
            "/permissions/audit-logs", params={"resource_type": "role"}, headers=as_user(admin)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["resource_id"] == role["id"]
        assert body["items"][0]["user_id"] == admin.id


async def grant_manage_permissions(client, admin, user, can_update=True):
    """Give user a role holding MANAGE_PERMISSIONS with the chosen update flag."""
    capability = await create_capability(client, admin, code="MANAGE_PERMISSIONS")
    role = await create_role(client, admin, code="PERMISSION_MANAGER")
    await client.put(
        f"/permissions/roles/{role['id']}/capabilities",
        json={"capability_id": capability["id"], "can_update": can_update},
        headers=as_user(admin),
    )
    response = await client.post(
        f"/permissions/users/{user.id}/roles", json={"role_id": role["id"]}, headers=as_user(admin)
    )
    assert response.status_code == 200, response.text
    return role


class TestPermissionManagers:
    """Holders of MANAGE_PERMISSIONS:update administer permissions without the admin flag."""

    async def test_manager_can_administer(self, client, admin, member):
        await grant_manage_permissions(client, admin, member)

        response = await client.post(
            "/permissions/roles", json={"code": "CLERK", "name": "Clerk"}, headers=as_user(member)
        )
        assert response.status_code == 201, response.text

        response = await client.get(f"/permissions/users/{admin.id}/effective", headers=as_user(member))
        assert response.status_code == 200

    async def test_read_only_grant_is_not_enough(self, client, admin, member):
        await grant_manage_permissions(client, admin, member, can_update=False)

        response = await client.post(
            "/permissions/roles", json={"code": "CLERK", "name": "Clerk"}, headers=as_user(member)
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Permission denied: update on MANAGE_PERMISSIONS"

    async def test_override_deny_revokes_manager(self, client, admin, member):
        await grant_manage_permissions(client, admin, member)
        listed = await client.get("/permissions/capabilities", headers=as_user(admin))
        manage = next(c for c in listed.json() if c["code"] == "MANAGE_PERMISSIONS")
        await client.put(
            f"/permissions/users/{member.id}/overrides",
            json={"capability_id": manage["id"], "effect": "DENY"},
            headers=as_user(admin),
        )

        response = await client.get("/permissions/roles-permissions", headers=as_user(member))

        assert response.status_code == 403


class TestRoleCapabilitySet:
    """Replacing the whole capability set of a role."""

    async def test_replace_set(self, client, admin, member):
        orders = await create_capability(client, admin, code="orders")
        quotes = await create_capability(client, admin, code="quotes")
        role = await create_role(client, admin)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": orders["id"], "can_delete": True},
            headers=as_user(admin),
        )
        await client.post(
            f"/permissions/users/{member.id}/roles", json={"role_id": role["id"]}, headers=as_user(admin)
        )

        response = await client.put(
            f"/permissions/roles/{role['id']}/permissions",
            json={"grants": [{"capability_id": quotes["id"], "can_update": True}]},
            headers=as_user(admin),
        )

        assert response.status_code == 200, response.text
        grants = response.json()["grants"]
        assert [g["capability"]["code"] for g in grants] == ["quotes"]
        assert grants[0]["can_update"] is True
        assert grants[0]["can_read"] is True

        assert (await check(client, member, "orders", "delete"))["has_permission"] is False
        assert (await check(client, member, "quotes", "update"))["has_permission"] is True

    async def test_existing_grant_flags_are_replaced(self, client, admin):
        orders = await create_capability(client, admin, code="orders")
        role = await create_role(client, admin)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": orders["id"], "can_create": True},
            headers=as_user(admin),
        )

        response = await client.put(
            f"/permissions/roles/{role['id']}/permissions",
            json={"grants": [{"capability_id": orders["id"], "can_read": False, "can_delete": True}]},
            headers=as_user(admin),
        )

        grant = response.json()["grants"][0]
        assert (grant["can_create"], grant["can_read"], grant["can_delete"]) == (False, False, True)

    async def test_empty_set_clears_role(self, client, admin):
        orders = await create_capability(client, admin, code="orders")
        role = await create_role(client, admin)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": orders["id"]},
            headers=as_user(admin),
        )

        response = await client.put(
            f"/permissions/roles/{role['id']}/permissions", json={"grants": []}, headers=as_user(admin)
        )

        assert response.status_code == 200
        assert response.json()["grants"] == []

    async def test_rejects_unknown_and_duplicate_capabilities(self, client, admin):
        orders = await create_capability(client, admin, code="orders")
        role = await create_role(client, admin)

        unknown = await client.put(
            f"/permissions/roles/{role['id']}/permissions",
            json={"grants": [{"capability_id": "missing"}]},
            headers=as_user(admin),
        )
        assert unknown.status_code == 404

        duplicate = await client.put(
            f"/permissions/roles/{role['id']}/permissions",
            json={"grants": [{"capability_id": orders["id"]}, {"capability_id": orders["id"]}]},
            headers=as_user(admin),
        )
        assert duplicate.status_code == 400

    async def test_super_admin_set_is_protected(self, client, admin):
        role = await create_role(client, admin, code="SUPER_ADMIN", is_system=True)

        response = await client.put(
            f"/permissions/roles/{role['id']}/permissions", json={"grants": []}, headers=as_user(admin)
        )

        assert response.status_code == 403


class TestRoleOverviews:
    """Matrix, user counts and capability categories."""

    async def test_roles_permissions_matrix(self, client, admin, member):
        orders = await create_capability(client, admin, code="orders")
        await create_capability(client, admin, code="quotes")
        role = await create_role(client, admin)
        await client.put(
            f"/permissions/roles/{role['id']}/capabilities",
            json={"capability_id": orders["id"], "can_create": True},
            headers=as_user(admin),
        )
        await client.post(
            f"/permissions/users/{member.id}/roles", json={"role_id": role["id"]}, headers=as_user(admin)
        )

        response = await client.get("/permissions/roles-permissions", headers=as_user(admin))

        assert response.status_code == 200, response.text
        body = response.json()
        assert sorted(c["code"] for c in body["capabilities"]) == ["orders", "quotes"]
        (row,) = body["roles"]
        assert row["code"] == "VIEWER"
        assert row["user_count"] == 1
        assert row["grants"] == {
            "orders": {"can_create": True, "can_read": True, "can_update": False, "can_delete": False}
        }

    async def test_matrix_requires_manager(self, client, member):
        response = await client.get("/permissions/roles-permissions", headers=as_user(member))
        assert response.status_code == 403

    async def test_roles_with_user_count(self, client, admin, member):
        custom = await create_role(client, admin, code="AAA_CUSTOM")
        system = await create_role(client, admin, code="STAFF", is_system=True)
        await client.post(
            f"/permissions/users/{member.id}/roles", json={"role_id": system["id"]}, headers=as_user(admin)
        )
        await client.post(
            f"/permissions/users/{admin.id}/roles", json={"role_id": system["id"]}, headers=as_user(admin)
        )

        response = await client.get("/permissions/roles-with-user-count", headers=as_user(admin))

        assert response.status_code == 200, response.text
        rows = [(r["id"], r["user_count"]) for r in response.json()]
        assert rows == [(system["id"], 2), (custom["id"], 0)]

    async def test_capabilities_by_category(self, client, admin):
        await client.post(
            "/permissions/capabilities",
            json={"code": "orders", "name": "Orders", "module": "orders", "category": "ORDERS"},
            headers=as_user(admin),
        )
        await create_capability(client, admin, code="reports")

        response = await client.get("/permissions/capabilities-by-category", headers=as_user(admin))

        assert response.status_code == 200, response.text
        grouped = response.json()
        assert set(grouped) == {"ORDERS", "GENERAL"}
        assert [c["code"] for c in grouped["ORDERS"]] == ["orders"]
        assert [c["code"] for c in grouped["GENERAL"]] == ["reports"]
