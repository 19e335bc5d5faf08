"""Tests for SqlAccessStore against an in-memory SQLite database."""

import pytest

from app.features.permissions.models import (
    Capability,
    FeatureVisibilityRule,
    GroupCapability,
    ModuleAccess,
    PermissionGroup,
    Role,
    RoleCapability,
    UserCapabilityOverride,
    UserGroupMembership,
    UserRoleAssignment,
)
from app.features.permissions.resolver import (
    AccessResolver,
    CrudFlags,
    Effect,
    GrantSources,
    Visibility,
)
from app.features.permissions.store import SqlAccessStore


@pytest.fixture
def sql_store(db):
    return SqlAccessStore(db)


async def add_all(db, *objects):
    db.add_all(objects)
    await db.commit()
    for obj in objects:
        await db.refresh(obj)
    return objects


async def make_capability(db, code, is_active=True):
    (capability,) = await add_all(db, Capability(code=code, name=code.title(), module=code, is_active=is_active))
    return capability


async def make_role(db, code, grants, is_active=True):
    """Create a role granting {capability: CrudFlags kwargs}."""
    role = Role(code=code, name=code.title(), is_active=is_active)
    for capability, flags in grants.items():
        role.grants.append(RoleCapability(capability_id=capability.id, **flags))
    await add_all(db, role)
    return role


async def make_group(db, code, effects, is_active=True):
    group = PermissionGroup(code=code, name=code.title(), is_active=is_active)
    for capability, effect in effects.items():
        group.grants.append(GroupCapability(capability_id=capability.id, effect=effect))
    await add_all(db, group)
    return group


class TestLoadGrantSources:
    """Tests for loading the three grant sources."""

    async def test_loads_roles_groups_and_overrides(self, db, sql_store, make_user):
        user = await make_user()
        orders = await make_capability(db, "orders")
        quotes = await make_capability(db, "quotes")
        reports = await make_capability(db, "reports")
        viewer = await make_role(db, "VIEWER", {orders: dict(can_read=True)})
        sales = await make_group(db, "SALES", {quotes: Effect.ALLOW})
        await add_all(
            db,
            UserRoleAssignment(user_id=user.id, role_id=viewer.id),
            UserGroupMembership(user_id=user.id, group_id=sales.id),
            UserCapabilityOverride(user_id=user.id, capability_id=reports.id, effect=Effect.DENY),
        )

        sources = await sql_store.load_grant_sources(user.id)

        assert sources.role_codes == frozenset({"VIEWER"})
        assert len(sources.role_grants) == 1
        grant = sources.role_grants[0]
        assert (grant.role_code, grant.capability_code) == ("VIEWER", "orders")
        assert grant.flags == CrudFlags(read=True)
        assert sources.group_effects == {"quotes": Effect.ALLOW}
        assert sources.overrides == {"reports": Effect.DENY}

    async def test_unknown_principal_is_empty(self, sql_store):
        assert (await sql_store.load_grant_sources("missing")).is_empty()

    async def test_inactive_principal_is_empty(self, db, sql_store, make_user):
        user = await make_user(is_active=False)
        orders = await make_capability(db, "orders")
        await add_all(db, UserCapabilityOverride(user_id=user.id, capability_id=orders.id, effect=Effect.ALLOW))

        assert await sql_store.load_grant_sources(user.id) == GrantSources()

    async def test_skips_inactive_role_and_revoked_assignment(self, db, sql_store, make_user):
        user = await make_user()
        orders = await make_capability(db, "orders")
        retired = await make_role(db, "RETIRED", {orders: dict(can_delete=True)}, is_active=False)
        revoked = await make_role(db, "REVOKED", {orders: dict(can_update=True)})
        await add_all(
            db,
            UserRoleAssignment(user_id=user.id, role_id=retired.id),
            UserRoleAssignment(user_id=user.id, role_id=revoked.id, is_active=False),
        )

        sources = await sql_store.load_grant_sources(user.id)

        assert sources.role_codes == frozenset()
        assert sources.role_grants == ()

    async def test_skips_inactive_capability_everywhere(self, db, sql_store, make_user):
        user = await make_user()
        legacy = await make_capability(db, "legacy", is_active=False)
        role = await make_role(db, "STAFF", {legacy: dict(can_read=True)})
        group = await make_group(db, "SALES", {legacy: Effect.ALLOW})
        await add_all(
            db,
            UserRoleAssignment(user_id=user.id, role_id=role.id),
            UserGroupMembership(user_id=user.id, group_id=group.id),
            UserCapabilityOverride(user_id=user.id, capability_id=legacy.id, effect=Effect.ALLOW),
        )

        sources = await sql_store.load_grant_sources(user.id)

        assert sources.role_codes == frozenset({"STAFF"})
        assert sources.role_grants == ()
        assert sources.group_effects == {}
        assert sources.overrides == {}

    async def test_skips_inactive_group(self, db, sql_store, make_user):
        user = await make_user()
        orders = await make_capability(db, "orders")
        group = await make_group(db, "OLD", {orders: Effect.ALLOW}, is_active=False)
        await add_all(db, UserGroupMembership(user_id=user.id, group_id=group.id))

        assert (await sql_store.load_grant_sources(user.id)).group_effects == {}

    async def test_deny_wins_between_groups(self, db, sql_store, make_user):
        user = await make_user()
        orders = await make_capability(db, "orders")
        allow = await make_group(db, "ALLOWERS", {orders: Effect.ALLOW})
        deny = await make_group(db, "DENIERS", {orders: Effect.DENY})
        await add_all(
            db,
            UserGroupMembership(user_id=user.id, group_id=allow.id),
            UserGroupMembership(user_id=user.id, group_id=deny.id),
        )

        assert (await sql_store.load_grant_sources(user.id)).group_effects == {"orders": Effect.DENY}


class TestFeatureRulesAndModules:
    """Tests for feature rule, completion and module lookups."""

    async def test_principal_rule_preferred_over_platform_rule(self, db, sql_store, make_user):
        user = await make_user()
        other = await make_user()
        await add_all(
            db,
            FeatureVisibilityRule(user_id=None, feature_code="AI_TOOLS", visibility=Visibility.HIDE),
            FeatureVisibilityRule(
                user_id=user.id,
                feature_code="AI_TOOLS",
                visibility=Visibility.RESTRICTED,
                required_profile_percent=40,
            ),
        )

        own = await sql_store.get_feature_rule(user.id, "AI_TOOLS")
        fallback = await sql_store.get_feature_rule(other.id, "AI_TOOLS")

        assert own.visibility is Visibility.RESTRICTED
        assert own.required_profile_percent == 40
        assert fallback.visibility is Visibility.HIDE
        assert await sql_store.get_feature_rule(user.id, "TRADER_TOOLS") is None

    async def test_completion_percent(self, sql_store, make_user):
        user = await make_user(completion_percent=65)

        assert await sql_store.get_completion_percent(user.id) == 65
        assert await sql_store.get_completion_percent("missing") is None

    async def test_get_module(self, db, sql_store):
        await add_all(db, ModuleAccess(module_key="reports", name="Reports", required_role="BRANCH_MANAGER"))

        module = await sql_store.get_module("reports")

        assert module.is_enabled is True
        assert module.required_role == "BRANCH_MANAGER"
        assert await sql_store.get_module("ads") is None


class TestResolverOverDatabase:
    """The resolver sees writes made between calls."""

    async def test_module_opens_after_role_assignment(self, db, sql_store, make_user):
        user = await make_user()
        staff = await make_role(db, "STAFF", {})
        manager = await make_role(db, "BRANCH_MANAGER", {})
        await add_all(
            db,
            ModuleAccess(module_key="reports", name="Reports", required_role="BRANCH_MANAGER"),
            UserRoleAssignment(user_id=user.id, role_id=staff.id),
        )
        resolver = AccessResolver(sql_store)

        assert await resolver.can_access_module(user.id, "reports") is False

        await add_all(db, UserRoleAssignment(user_id=user.id, role_id=manager.id))

        assert await resolver.can_access_module(user.id, "reports") is True

    async def test_restricted_feature_follows_completion(self, db, sql_store, make_user):
        user = await make_user(completion_percent=30)
        await add_all(
            db,
            FeatureVisibilityRule(
                feature_code="AI_TOOLS", visibility=Visibility.RESTRICTED, required_profile_percent=50
            ),
        )
        resolver = AccessResolver(sql_store)

        assert (await resolver.check_feature(user.id, "AI_TOOLS")).allowed is False

        user.completion_percent = 50
        await db.commit()

        assert (await resolver.check_feature(user.id, "AI_TOOLS")).allowed is True


class TestPrimaryKeys:
    """Rows get generated ULID string ids on insert."""

    async def test_role_insert_generates_ulid(self, db):
        first = Role(code="ORDERS_CLERK", name="Orders Clerk")
        second = Role(code="QUOTES_CLERK", name="Quotes Clerk")

        await add_all(db, first, second)

        assert isinstance(first.id, str)
        assert len(first.id) == 26
        assert first.id != second.id

    async def test_user_insert_generates_ulid(self, make_user):
        user = await make_user()

        assert isinstance(user.id, str)
        assert len(user.id) == 26
