"""
Pydantic schemas for permission management.

Request and response models for capabilities, roles, groups, overrides,
feature visibility, modules, access checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from app.features.permissions.resolver import (
    Action,
    Decision,
    Effect,
    EffectivePermission,
    FeatureDecision,
    GrantSource,
    Visibility,
)


def _validate_code(v: str, extra: str = "_") -> str:
    if not v.translate({ord(c): None for c in extra}).isalnum():
        raise ValueError(f"Code must contain only alphanumeric characters and {' '.join(repr(c) for c in extra)}")
    return v


# ============================================================================
# Capability Schemas
# ============================================================================

class CapabilityBase(BaseModel):
    """Base capability schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Stable capability code (e.g., 'orders')")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    module: str = Field(..., min_length=1, max_length=100, description="Owning module key (e.g., 'orders')")
    category: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class CapabilityCreate(CapabilityBase):
    """Schema for creating a new capability."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate capability code format."""
        return _validate_code(v, "_.:-")


class CapabilityUpdate(BaseModel):
    """Schema for updating a capability. The code is immutable."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class CapabilityResponse(CapabilityBase):
    """Schema for capability response."""
    id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique role code (e.g., 'BRANCH_MANAGER')")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    is_system: bool = False

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Role codes are upper snake case."""
        return _validate_code(v, "_-").upper()


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_system: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleGrantResponse(BaseModel):
    """A capability granted by a role with its CRUD flags."""
    id: str
    capability_id: str
    can_create: bool
    can_read: bool
    can_update: bool
    can_delete: bool
    capability: CapabilityResponse

    model_config = ConfigDict(from_attributes=True)


class RoleWithGrants(RoleResponse):
    """Schema for role with its capability grants."""
    grants: List[RoleGrantResponse] = []

    model_config = ConfigDict(from_attributes=True)


class AssignCapabilityToRole(BaseModel):
    """Grant a capability to a role. Unspecified flags default to read-only."""
    capability_id: str = Field(..., description="Capability ID")
    can_create: bool = False
    can_read: bool = True
    can_update: bool = False
    can_delete: bool = False


class RoleCapabilitySet(BaseModel):
    """Replace every capability grant of a role at once."""
    grants: List[AssignCapabilityToRole] = Field(default_factory=list)

    @field_validator('grants')
    @classmethod
    def unique_capabilities(cls, v: List[AssignCapabilityToRole]) -> List[AssignCapabilityToRole]:
        """A capability may appear only once in the set."""
        ids = [grant.capability_id for grant in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Each capability may appear only once")
        return v


class RoleWithUserCount(RoleResponse):
    """Role with the number of users actively holding it."""
    user_count: int = 0


class CrudFlagsResponse(BaseModel):
    can_create: bool
    can_read: bool
    can_update: bool
    can_delete: bool


class RoleMatrixEntry(BaseModel):
    """One row of the role/capability matrix, keyed by capability code."""
    id: str
    code: str
    name: str
    is_system: bool
    user_count: int
    grants: Dict[str, CrudFlagsResponse]


class RolePermissionMatrixResponse(BaseModel):
    """Active capabilities (columns) and active roles with their grants (rows)."""
    capabilities: List[CapabilityResponse]
    roles: List[RoleMatrixEntry]


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique group code")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class GroupCreate(GroupBase):
    """Schema for creating a new permission group."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _validate_code(v, "_-").upper()


class GroupUpdate(BaseModel):
    """Schema for updating a group."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class GroupResponse(GroupBase):
    """Schema for group response."""
    id: str
    is_system_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupGrantResponse(BaseModel):
    id: str
    capability_id: str
    effect: Effect
    capability: CapabilityResponse

    model_config = ConfigDict(from_attributes=True)


class GroupWithGrants(GroupResponse):
    """Schema for group with its capability effects."""
    grants: List[GroupGrantResponse] = []

    model_config = ConfigDict(from_attributes=True)


class AssignCapabilityToGroup(BaseModel):
    """Allow or deny a whole capability through a group."""
    capability_id: str = Field(..., description="Capability ID")
    effect: Effect = Effect.ALLOW


class AssignUserToGroup(BaseModel):
    """Schema for adding a user to a group."""
    user_id: str = Field(..., description="User ID")


# ============================================================================
# User Assignment Schemas
# ============================================================================

class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user."""
    role_id: str = Field(..., description="Role ID")


class UserRoleResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    is_active: bool
    assigned_by_id: Optional[str]
    role: RoleResponse
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OverrideSet(BaseModel):
    """Schema for setting a per-user capability override."""
    capability_id: str = Field(..., description="Capability ID")
    effect: Effect
    reason: Optional[str] = Field(None, max_length=1000, description="Justification shown in the admin console")


class OverrideResponse(BaseModel):
    id: str
    user_id: str
    capability_id: str
    effect: Effect
    reason: Optional[str]
    assigned_by_id: Optional[str]
    capability: CapabilityResponse
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Feature Visibility Schemas
# ============================================================================

class FeatureVisibilitySet(BaseModel):
    """Schema for setting a feature visibility rule."""
    feature_code: str = Field(..., min_length=1, max_length=100, description="Feature code (e.g., 'AI_TOOLS')")
    visibility: Visibility
    required_profile_percent: Optional[int] = Field(None, ge=0, le=100)
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def restricted_needs_threshold(self) -> "FeatureVisibilitySet":
        """RESTRICTED rules must name a minimum profile completion."""
        if self.visibility is Visibility.RESTRICTED and self.required_profile_percent is None:
            raise ValueError('required_profile_percent is required for RESTRICTED visibility')
        return self


class FeatureVisibilityResponse(BaseModel):
    id: str
    user_id: Optional[str]
    feature_code: str
    visibility: Visibility
    required_profile_percent: Optional[int]
    reason: Optional[str]
    assigned_by_id: Optional[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Module Schemas
# ============================================================================

class ModuleCreate(BaseModel):
    module_key: str = Field(..., min_length=1, max_length=50, description="Module key (e.g., 'reports')")
    name: str = Field(..., min_length=1, max_length=100)
    is_enabled: bool = True
    required_role: Optional[str] = Field(None, max_length=50, description="Role code required to enter the module")


class ModuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    is_enabled: Optional[bool] = None
    required_role: Optional[str] = Field(None, max_length=50)


class ModuleResponse(BaseModel):
    id: str
    module_key: str
    name: str
    is_enabled: bool
    required_role: Optional[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Access Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user may perform an action on a capability."""
    capability_code: str = Field(..., description="Capability code")
    action: Action = Field(Action.READ, description="create, read, update or delete ('view'/'edit' accepted)")
    user_id: Optional[str] = Field(None, description="User to check (admins only; defaults to the caller)")
    module_key: Optional[str] = Field(None, description="Module gate to apply as well")
    feature_code: Optional[str] = Field(None, description="Feature gate to apply as well")

    @field_validator('action', mode='before')
    @classmethod
    def parse_action(cls, v: Any) -> Action:
        if isinstance(v, str):
            return Action.parse(v)
        return v


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    decision: Decision
    source: Optional[GrantSource] = None
    denied_by: Optional[str] = None
    reason: Optional[str] = None


class EffectivePermissionResponse(BaseModel):
    """Merged permission for one capability. CRUD flags are present only for role-sourced records."""
    capability_code: str
    source: GrantSource
    allowed: bool
    can_create: Optional[bool] = None
    can_read: Optional[bool] = None
    can_update: Optional[bool] = None
    can_delete: Optional[bool] = None

    @classmethod
    def from_effective(cls, record: EffectivePermission) -> "EffectivePermissionResponse":
        crud = record.crud
        return cls(
            capability_code=record.capability_code,
            source=record.source,
            allowed=record.allowed,
            can_create=crud.create if crud else None,
            can_read=crud.read if crud else None,
            can_update=crud.update if crud else None,
            can_delete=crud.delete if crud else None,
        )


class UserEffectivePermissionsResponse(BaseModel):
    user_id: str
    permissions: List[EffectivePermissionResponse] = []


class FeatureDecisionResponse(BaseModel):
    feature_code: str
    visibility: Visibility
    allowed: bool
    required_profile_percent: Optional[int] = None

    @classmethod
    def from_decision(cls, decision: FeatureDecision) -> "FeatureDecisionResponse":
        return cls(
            feature_code=decision.feature_code,
            visibility=decision.visibility,
            allowed=decision.allowed,
            required_profile_percent=decision.required_profile_percent,
        )


class ModuleAccessCheckResponse(BaseModel):
    module_key: str
    allowed: bool
    decision: Decision


class PermissionSnapshotResponse(BaseModel):
    """Roles, allowed capability codes and feature decisions of a user."""
    user_id: str
    roles: List[str] = []
    permissions: List[str] = []
    features: Dict[str, FeatureDecisionResponse] = {}


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
