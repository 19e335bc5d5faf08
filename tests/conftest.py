"""Shared fixtures: in-memory access store, SQLite database and HTTP client."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.base import Base
from app.core.database.engine import get_db, init_db
from app.features.permissions.resolver import (
    AccessResolver,
    CrudFlags,
    Effect,
    FeatureRule,
    GrantSources,
    ModuleRule,
    RoleGrant,
)
from app.features.users.models import User


class FakeAccessStore:
    """Dictionary-backed AccessStore that records every lookup."""

    def __init__(self):
        self.sources: dict[str, GrantSources] = {}
        self.completion: dict[str, int] = {}
        self.feature_rules: dict[tuple, FeatureRule] = {}
        self.modules: dict[str, ModuleRule] = {}
        self.calls: list[tuple] = []

    def grant(self, principal_id, roles=(), role_grants=(), groups=None, overrides=None):
        self.sources[principal_id] = GrantSources(
            role_codes=frozenset(roles),
            role_grants=tuple(role_grants),
            group_effects=dict(groups or {}),
            overrides=dict(overrides or {}),
        )

    async def load_grant_sources(self, principal_id):
        self.calls.append(("load_grant_sources", principal_id))
        return self.sources.get(principal_id, GrantSources())

    async def get_completion_percent(self, principal_id):
        self.calls.append(("get_completion_percent", principal_id))
        return self.completion.get(principal_id)

    async def get_feature_rule(self, principal_id, feature_code):
        self.calls.append(("get_feature_rule", principal_id, feature_code))
        rule = self.feature_rules.get((principal_id, feature_code))
        if rule is None:
            rule = self.feature_rules.get((None, feature_code))
        return rule

    async def get_module(self, module_key):
        self.calls.append(("get_module", module_key))
        return self.modules.get(module_key)


def role_grant(role_code, capability_code, **flags):
    """Build a RoleGrant from keyword CRUD flags, e.g. role_grant("VIEWER", "orders", read=True)."""
    return RoleGrant(role_code, capability_code, CrudFlags(**flags))


ALLOW = Effect.ALLOW
DENY = Effect.DENY


@pytest.fixture
def store():
    return FakeAccessStore()


@pytest.fixture
def resolver(store):
    return AccessResolver(store)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def make_user(db):
    """Factory inserting a user row."""
    counter = {"n": 0}

    async def _make(user_id=None, is_admin=False, is_active=True, completion_percent=0):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            is_admin=is_admin,
            is_active=is_active,
            completion_percent=completion_percent,
        )
        if user_id:
            user.id = user_id
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    return _make


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
async def client(session_factory):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def as_user(user) -> dict:
    """Headers identifying the caller."""
    return {"X-User-Id": user.id}
