"""
SQLAlchemy implementation of the AccessStore read contract.
"""
from typing import Optional
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.users.models import User
from app.features.permissions.models import (
    Capability,
    Role,
    RoleCapability,
    UserRoleAssignment,
    PermissionGroup,
    GroupCapability,
    UserGroupMembership,
    UserCapabilityOverride,
    FeatureVisibilityRule,
    ModuleAccess,
)
from app.features.permissions.resolver import (
    CrudFlags,
    FeatureRule,
    GrantSources,
    ModuleRule,
    RoleGrant,
    combine_group_effects,
)
from app.utils import get_logger


log = get_logger(__name__)


class SqlAccessStore:
    """
    Loads grant sources, profile completion, feature rules and modules from the database.

    Inactive roles, groups, capabilities and role assignments are skipped, as
    are rows whose role/group/capability no longer exists. A missing or
    deactivated user resolves to empty grant sources.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_grant_sources(self, principal_id: str) -> GrantSources:
        result = await self.db.execute(select(User.is_active).where(User.id == principal_id))
        is_active = result.scalar_one_or_none()
        if not is_active:
            log.debug(f"Principal {principal_id} missing or inactive; no grants loaded")
            return GrantSources()

        # 1. Roles held
        stmt = (
            select(Role.code)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
            .where(
                and_(
                    UserRoleAssignment.user_id == principal_id,
                    UserRoleAssignment.is_active.is_(True),
                    Role.is_active.is_(True),
                )
            )
        )
        result = await self.db.execute(stmt)
        role_codes = frozenset(result.scalars().all())

        # 2. CRUD grants through those roles
        stmt = (
            select(
                Role.code,
                Capability.code,
                RoleCapability.can_create,
                RoleCapability.can_read,
                RoleCapability.can_update,
                RoleCapability.can_delete,
            )
            .select_from(RoleCapability)
            .join(Role, Role.id == RoleCapability.role_id)
            .join(Capability, Capability.id == RoleCapability.capability_id)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == RoleCapability.role_id)
            .where(
                and_(
                    UserRoleAssignment.user_id == principal_id,
                    UserRoleAssignment.is_active.is_(True),
                    Role.is_active.is_(True),
                    Capability.is_active.is_(True),
                )
            )
        )
        result = await self.db.execute(stmt)
        role_grants = tuple(
            RoleGrant(
                role_code=role_code,
                capability_code=capability_code,
                flags=CrudFlags(create=can_create, read=can_read, update=can_update, delete=can_delete),
            )
            for role_code, capability_code, can_create, can_read, can_update, can_delete in result.all()
        )

        # 3. Group effects
        stmt = (
            select(Capability.code, GroupCapability.effect)
            .select_from(GroupCapability)
            .join(PermissionGroup, PermissionGroup.id == GroupCapability.group_id)
            .join(Capability, Capability.id == GroupCapability.capability_id)
            .join(UserGroupMembership, UserGroupMembership.group_id == GroupCapability.group_id)
            .where(
                and_(
                    UserGroupMembership.user_id == principal_id,
                    PermissionGroup.is_active.is_(True),
                    Capability.is_active.is_(True),
                )
            )
        )
        result = await self.db.execute(stmt)
        group_effects = combine_group_effects(result.all())

        # 4. Overrides
        stmt = (
            select(Capability.code, UserCapabilityOverride.effect)
            .select_from(UserCapabilityOverride)
            .join(Capability, Capability.id == UserCapabilityOverride.capability_id)
            .where(
                and_(
                    UserCapabilityOverride.user_id == principal_id,
                    Capability.is_active.is_(True),
                )
            )
        )
        result = await self.db.execute(stmt)
        overrides = {code: effect for code, effect in result.all()}

        return GrantSources(
            role_codes=role_codes,
            role_grants=role_grants,
            group_effects=group_effects,
            overrides=overrides,
        )

    async def get_completion_percent(self, principal_id: str) -> Optional[int]:
        result = await self.db.execute(select(User.completion_percent).where(User.id == principal_id))
        return result.scalar_one_or_none()

    async def get_feature_rule(self, principal_id: str, feature_code: str) -> Optional[FeatureRule]:
        """Principal-specific rule if present, else the platform-wide rule for the feature."""
        stmt = select(FeatureVisibilityRule).where(
            and_(
                FeatureVisibilityRule.user_id == principal_id,
                FeatureVisibilityRule.feature_code == feature_code,
            )
        )
        result = await self.db.execute(stmt)
        row = result.scalars().first()

        if row is None:
            stmt = select(FeatureVisibilityRule).where(
                and_(
                    FeatureVisibilityRule.user_id.is_(None),
                    FeatureVisibilityRule.feature_code == feature_code,
                )
            )
            result = await self.db.execute(stmt)
            row = result.scalars().first()

        if row is None:
            return None
        return FeatureRule(
            feature_code=row.feature_code,
            visibility=row.visibility,
            required_profile_percent=row.required_profile_percent,
        )

    async def get_module(self, module_key: str) -> Optional[ModuleRule]:
        result = await self.db.execute(select(ModuleAccess).where(ModuleAccess.module_key == module_key))
        module = result.scalars().first()
        if module is None:
            return None
        return ModuleRule(
            module_key=module.module_key,
            is_enabled=module.is_enabled,
            required_role=module.required_role,
        )
