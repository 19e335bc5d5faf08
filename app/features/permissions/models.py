"""
Capability, Role, Group, Override, Feature and Module models for marketplace RBAC.

This module implements the relational side of the permission system:
- Capabilities with per-role CRUD grants
- Users holding any number of roles
- Permission groups granting or denying whole capabilities
- Per-user overrides (highest precedence)
- Feature visibility rules gated on profile completeness
- Module access switches with an optional required role
"""
from typing import Any, Dict
from sqlalchemy import (
    String,
    ForeignKey,
    JSON,
    Text,
    Boolean,
    Integer,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from app.core.database.base import Base, TimestampMixin
from app.features.permissions.resolver import Effect, Visibility


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return ulid.new().str


# ============================================================================
# Core Models
# ============================================================================

class Capability(Base, TimestampMixin):
    """
    A named unit of access control scoped to a module.

    Identified by a stable code once referenced by grants.
    Examples: orders, products.edit, MANAGE_PERMISSIONS
    """
    __tablename__ = "capabilities"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Capability definition
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    module: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Soft-disable flag
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Capability(id={self.id}, code={self.code!r}, module={self.module})>"


class Role(Base, TimestampMixin):
    """
    Role model bundling CRUD capability grants.

    System roles cannot be deleted.
    Examples: SUPER_ADMIN, STAFF, CUSTOMER, BRANCH_MANAGER
    """
    __tablename__ = "roles"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Role definition
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    grants: Mapped[list["RoleCapability"]] = relationship(
        "RoleCapability",
        back_populates="role",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, code={self.code!r}, system={self.is_system})>"


class RoleCapability(Base, TimestampMixin):
    """Capability granted by a role, with independent CRUD sub-rights."""
    __tablename__ = "role_capabilities"
    __table_args__ = (UniqueConstraint("role_id", "capability_id", name="uq_role_capability"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    capability_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("capabilities.id", ondelete="CASCADE"), nullable=False, index=True
    )

    can_create: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_read: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    role: Mapped["Role"] = relationship("Role", back_populates="grants")
    capability: Mapped["Capability"] = relationship("Capability", lazy="selectin")

    def __repr__(self) -> str:
        return f"<RoleCapability(role_id={self.role_id}, capability_id={self.capability_id})>"


class UserRoleAssignment(Base, TimestampMixin):
    """Role held by a user. Revocation is a soft delete (is_active = False)."""
    __tablename__ = "user_role_assignments"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_role"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id}, active={self.is_active})>"


class PermissionGroup(Base, TimestampMixin):
    """
    Group model granting or denying whole capabilities.

    Membership is independent of roles.
    Examples: SUPPORT_STAFF, VIP_CUSTOMER, POWER_SUPPLIER
    """
    __tablename__ = "permission_groups"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Group definition
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    grants: Mapped[list["GroupCapability"]] = relationship(
        "GroupCapability",
        back_populates="group",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<PermissionGroup(id={self.id}, code={self.code!r})>"


class GroupCapability(Base, TimestampMixin):
    """Capability allowed or denied as a whole by a group."""
    __tablename__ = "group_capabilities"
    __table_args__ = (UniqueConstraint("group_id", "capability_id", name="uq_group_capability"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permission_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    capability_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("capabilities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    effect: Mapped[Effect] = mapped_column(SQLEnum(Effect, native_enum=False, length=10), default=Effect.ALLOW, nullable=False)

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="grants")
    capability: Mapped["Capability"] = relationship("Capability", lazy="selectin")

    def __repr__(self) -> str:
        return f"<GroupCapability(group_id={self.group_id}, capability_id={self.capability_id}, effect={self.effect})>"


class UserGroupMembership(Base, TimestampMixin):
    """User membership in a permission group."""
    __tablename__ = "user_group_memberships"
    __table_args__ = (UniqueConstraint("user_id", "group_id", name="uq_user_group"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permission_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<UserGroupMembership(user_id={self.user_id}, group_id={self.group_id})>"


class UserCapabilityOverride(Base, TimestampMixin):
    """
    Per-user ALLOW/DENY on one capability.

    At most one per (user, capability). Deleted only when explicitly revoked.
    """
    __tablename__ = "user_capability_overrides"
    __table_args__ = (UniqueConstraint("user_id", "capability_id", name="uq_user_capability_override"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    capability_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("capabilities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    effect: Mapped[Effect] = mapped_column(SQLEnum(Effect, native_enum=False, length=10), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    capability: Mapped["Capability"] = relationship("Capability", lazy="selectin")

    def __repr__(self) -> str:
        return f"<UserCapabilityOverride(user_id={self.user_id}, capability_id={self.capability_id}, effect={self.effect})>"


class FeatureVisibilityRule(Base, TimestampMixin):
    """
    Visibility of a named feature for one user, or platform-wide when user_id is null.

    RESTRICTED rules require a minimum profile completion percentage.
    """
    __tablename__ = "feature_visibility_rules"
    __table_args__ = (UniqueConstraint("user_id", "feature_code", name="uq_user_feature"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    feature_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    visibility: Mapped[Visibility] = mapped_column(
        SQLEnum(Visibility, native_enum=False, length=20), default=Visibility.SHOW, nullable=False
    )
    required_profile_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<FeatureVisibilityRule(user_id={self.user_id}, feature={self.feature_code!r}, visibility={self.visibility})>"


class ModuleAccess(Base, TimestampMixin):
    """Coarse functional area with a platform-wide switch and optional required role."""
    __tablename__ = "module_access"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    module_key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    required_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<ModuleAccess(key={self.module_key!r}, enabled={self.is_enabled}, required_role={self.required_role})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    # Context
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
