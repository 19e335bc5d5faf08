"""
Permission management API routes.

Provides endpoints for managing capabilities, roles, groups, overrides,
feature visibility and modules, plus the access check endpoints.
"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks, Query
from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from app.core import config
from app.core.database.engine import get_db
from app.core.rate_limit import limiter
from app.features.users.dependencies import get_current_user
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
    AuditLog,
)
from app.features.permissions.schemas import (
    CapabilityCreate,
    CapabilityUpdate,
    CapabilityResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithGrants,
    RoleGrantResponse,
    AssignCapabilityToRole,
    RoleCapabilitySet,
    RoleWithUserCount,
    CrudFlagsResponse,
    RoleMatrixEntry,
    RolePermissionMatrixResponse,
    GroupCreate,
    GroupUpdate,
    GroupResponse,
    GroupWithGrants,
    GroupGrantResponse,
    AssignCapabilityToGroup,
    AssignUserToGroup,
    AssignRoleToUser,
    UserRoleResponse,
    OverrideSet,
    OverrideResponse,
    FeatureVisibilitySet,
    FeatureVisibilityResponse,
    ModuleCreate,
    ModuleUpdate,
    ModuleResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    EffectivePermissionResponse,
    UserEffectivePermissionsResponse,
    FeatureDecisionResponse,
    ModuleAccessCheckResponse,
    PermissionSnapshotResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    can_manage_permissions,
    create_audit_log,
    get_access_resolver,
    get_permission_manager,
)
from app.features.permissions.resolver import AccessResolver
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

# Grants of this role cannot be revoked through the API
PROTECTED_ROLE_CODE = "SUPER_ADMIN"

DEFAULT_CATEGORY = "GENERAL"


def _audit(
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession,
    current_user: User,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
):
    """Queue an audit log entry to be written after the response."""
    background_tasks.add_task(
        create_audit_log,
        db=db,
        user_id=current_user.id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )


async def _get_or_404(db: AsyncSession, model, object_id: str, label: str):
    result = await db.execute(select(model).where(model.id == object_id))
    obj = result.scalars().first()
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


async def _ensure_self_or_manager(user_id: str, current_user: User, resolver: AccessResolver):
    if user_id != current_user.id and not await can_manage_permissions(resolver, current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view other users' permissions"
        )


# ============================================================================
# Capability Routes
# ============================================================================

@router.post("/capabilities", response_model=CapabilityResponse, status_code=status.HTTP_201_CREATED)
async def create_capability(
    capability: CapabilityCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Create a new capability (permission managers only)."""
    try:
        db_capability = Capability(**capability.model_dump())
        db.add(db_capability)
        await db.commit()
        await db.refresh(db_capability)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Capability with this code already exists"
        )

    _audit(background_tasks, request, db, current_user, "create", "capability", db_capability.id,
           capability.model_dump())
    return db_capability


@router.get("/capabilities", response_model=List[CapabilityResponse])
async def list_capabilities(
    skip: int = 0,
    limit: int = 100,
    module: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List capabilities, optionally filtered by module."""
    stmt = select(Capability)

    if module:
        stmt = stmt.where(Capability.module == module)
    if not include_inactive:
        stmt = stmt.where(Capability.is_active.is_(True))

    stmt = stmt.order_by(Capability.module, Capability.sort_order, Capability.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/capabilities/{capability_id}", response_model=CapabilityResponse)
async def get_capability(
    capability_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific capability by ID."""
    return await _get_or_404(db, Capability, capability_id, "Capability")


@router.put("/capabilities/{capability_id}", response_model=CapabilityResponse)
async def update_capability(
    capability_id: str,
    capability_update: CapabilityUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Update a capability (permission managers only)."""
    db_capability = await _get_or_404(db, Capability, capability_id, "Capability")

    update_data = capability_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_capability, key, value)

    await db.commit()
    await db.refresh(db_capability)

    _audit(background_tasks, request, db, current_user, "update", "capability", capability_id, update_data)
    return db_capability


@router.delete("/capabilities/{capability_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disable_capability(
    capability_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Disable a capability (permission managers only). Its grants stop resolving but are kept."""
    db_capability = await _get_or_404(db, Capability, capability_id, "Capability")

    db_capability.is_active = False
    await db.commit()

    _audit(background_tasks, request, db, current_user, "disable", "capability", capability_id,
           {"code": db_capability.code})


@router.get("/capabilities-by-category", response_model=Dict[str, List[CapabilityResponse]])
async def list_capabilities_by_category(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """List active capabilities grouped by category. Uncategorized ones fall under GENERAL."""
    stmt = (
        select(Capability)
        .where(Capability.is_active.is_(True))
        .order_by(Capability.module, Capability.sort_order, Capability.code)
    )
    result = await db.execute(stmt)

    grouped: Dict[str, List[Capability]] = {}
    for capability in result.scalars().all():
        grouped.setdefault(capability.category or DEFAULT_CATEGORY, []).append(capability)
    return grouped


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Create a new role (permission managers only)."""
    try:
        db_role = Role(**role.model_dump())
        db.add(db_role)
        await db.commit()
        await db.refresh(db_role)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this code already exists"
        )

    _audit(background_tasks, request, db, current_user, "create", "role", db_role.id, role.model_dump())
    return db_role


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List roles."""
    stmt = select(Role)
    if not include_inactive:
        stmt = stmt.where(Role.is_active.is_(True))

    stmt = stmt.order_by(Role.sort_order, Role.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/roles/{role_id}", response_model=RoleWithGrants)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific role with its capability grants."""
    return await _get_or_404(db, Role, role_id, "Role")


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Update a role (permission managers only)."""
    db_role = await _get_or_404(db, Role, role_id, "Role")

    update_data = role_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_role, key, value)

    await db.commit()
    await db.refresh(db_role)

    _audit(background_tasks, request, db, current_user, "update", "role", role_id, update_data)
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """
    Deactivate a role (permission managers only).

    System roles cannot be deleted, and a role still held by users must be
    revoked from them first.
    """
    db_role = await _get_or_404(db, Role, role_id, "Role")

    if db_role.is_system:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete system roles"
        )

    count_stmt = select(func.count()).select_from(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active.is_(True)
        )
    )
    assigned = (await db.execute(count_stmt)).scalar() or 0
    if assigned:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Role is assigned to {assigned} user(s); revoke it first"
        )

    db_role.is_active = False
    await db.commit()

    _audit(background_tasks, request, db, current_user, "delete", "role", role_id, {"code": db_role.code})


@router.put("/roles/{role_id}/capabilities", response_model=RoleGrantResponse)
async def set_role_capability(
    role_id: str,
    grant: AssignCapabilityToRole,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Grant a capability to a role, or replace the CRUD flags of an existing grant (permission managers only)."""
    await _get_or_404(db, Role, role_id, "Role")
    await _get_or_404(db, Capability, grant.capability_id, "Capability")

    stmt = select(RoleCapability).where(
        and_(
            RoleCapability.role_id == role_id,
            RoleCapability.capability_id == grant.capability_id
        )
    )
    result = await db.execute(stmt)
    db_grant = result.scalars().first()

    flags = grant.model_dump(exclude={"capability_id"})
    if db_grant:
        for key, value in flags.items():
            setattr(db_grant, key, value)
    else:
        db_grant = RoleCapability(role_id=role_id, capability_id=grant.capability_id, **flags)
        db.add(db_grant)

    await db.commit()
    await db.refresh(db_grant)
    await db.refresh(db_grant, ["capability"])

    _audit(background_tasks, request, db, current_user, "grant", "role", role_id, grant.model_dump())
    return db_grant


@router.delete("/roles/{role_id}/capabilities/{capability_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_capability(
    role_id: str,
    capability_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Revoke a capability from a role (permission managers only)."""
    db_role = await _get_or_404(db, Role, role_id, "Role")

    if db_role.is_system and db_role.code == PROTECTED_ROLE_CODE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Cannot revoke capabilities from {PROTECTED_ROLE_CODE}"
        )

    stmt = select(RoleCapability).where(
        and_(
            RoleCapability.role_id == role_id,
            RoleCapability.capability_id == capability_id
        )
    )
    result = await db.execute(stmt)
    db_grant = result.scalars().first()
    if not db_grant:
        raise HTTPException(status_code=404, detail="Role does not grant this capability")

    await db.delete(db_grant)
    await db.commit()

    _audit(background_tasks, request, db, current_user, "revoke", "role", role_id,
           {"capability_id": capability_id})


@router.put("/roles/{role_id}/permissions", response_model=RoleWithGrants)
async def replace_role_capabilities(
    role_id: str,
    capability_set: RoleCapabilitySet,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """
    Replace the whole capability set of a role (permission managers only).

    Grants missing from the set are removed, listed ones are created or have
    their CRUD flags replaced. The SUPER_ADMIN system role cannot be edited.
    """
    db_role = await _get_or_404(db, Role, role_id, "Role")

    if db_role.is_system and db_role.code == PROTECTED_ROLE_CODE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Cannot modify capabilities of {PROTECTED_ROLE_CODE}"
        )

    wanted = {grant.capability_id: grant for grant in capability_set.grants}
    if wanted:
        result = await db.execute(select(Capability.id).where(Capability.id.in_(list(wanted))))
        missing = set(wanted) - set(result.scalars().all())
        if missing:
            raise HTTPException(status_code=404, detail=f"Capabilities not found: {sorted(missing)}")

    result = await db.execute(select(RoleCapability).where(RoleCapability.role_id == role_id))
    for db_grant in result.scalars().all():
        grant = wanted.pop(db_grant.capability_id, None)
        if grant is None:
            await db.delete(db_grant)
        else:
            for key, value in grant.model_dump(exclude={"capability_id"}).items():
                setattr(db_grant, key, value)

    for grant in wanted.values():
        db.add(RoleCapability(role_id=role_id, **grant.model_dump()))

    await db.commit()

    stmt = (
        select(Role)
        .where(Role.id == role_id)
        .options(selectinload(Role.grants).selectinload(RoleCapability.capability))
        .execution_options(populate_existing=True)
    )
    db_role = (await db.execute(stmt)).scalars().one()

    log.info(f"Role {db_role.code} capability set replaced by {current_user.id}: {len(db_role.grants)} grant(s)")
    _audit(background_tasks, request, db, current_user, "replace_grants", "role", role_id,
           {"capability_ids": [grant.capability_id for grant in capability_set.grants]})
    return db_role


async def _active_user_counts(db: AsyncSession) -> Dict[str, int]:
    stmt = (
        select(UserRoleAssignment.role_id, func.count())
        .where(UserRoleAssignment.is_active.is_(True))
        .group_by(UserRoleAssignment.role_id)
    )
    result = await db.execute(stmt)
    return {role_id: count for role_id, count in result.all()}


async def _active_roles(db: AsyncSession) -> List[Role]:
    stmt = (
        select(Role)
        .where(Role.is_active.is_(True))
        .order_by(Role.is_system.desc(), Role.sort_order, Role.code)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


@router.get("/roles-with-user-count", response_model=List[RoleWithUserCount])
async def list_roles_with_user_count(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """List active roles, system roles first, with how many users actively hold each."""
    counts = await _active_user_counts(db)
    return [
        RoleWithUserCount.model_validate(role).model_copy(update={"user_count": counts.get(role.id, 0)})
        for role in await _active_roles(db)
    ]


@router.get("/roles-permissions", response_model=RolePermissionMatrixResponse)
async def get_roles_permissions_matrix(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """
    Get the role/capability matrix.

    Columns are the active capabilities. Each active role lists the CRUD flags
    it grants, keyed by capability code. Grants on disabled capabilities are left out.
    """
    result = await db.execute(
        select(Capability)
        .where(Capability.is_active.is_(True))
        .order_by(Capability.module, Capability.sort_order, Capability.code)
    )
    capabilities = result.scalars().all()
    active_codes = {capability.code for capability in capabilities}
    counts = await _active_user_counts(db)

    rows = []
    for role in await _active_roles(db):
        grants = {
            grant.capability.code: CrudFlagsResponse(
                can_create=grant.can_create,
                can_read=grant.can_read,
                can_update=grant.can_update,
                can_delete=grant.can_delete,
            )
            for grant in role.grants
            if grant.capability.code in active_codes
        }
        rows.append(RoleMatrixEntry(
            id=role.id,
            code=role.code,
            name=role.name,
            is_system=role.is_system,
            user_count=counts.get(role.id, 0),
            grants=grants,
        ))

    return RolePermissionMatrixResponse(
        capabilities=[CapabilityResponse.model_validate(capability) for capability in capabilities],
        roles=rows
    )


# ============================================================================
# User Role Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=List[UserRoleResponse])
async def list_user_roles(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """List the active role assignments of a user."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    stmt = select(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.is_active.is_(True)
        )
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/users/{user_id}/roles", response_model=UserRoleResponse)
async def assign_role_to_user(
    user_id: str,
    assignment: AssignRoleToUser,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Assign a role to a user, re-activating a revoked assignment (permission managers only)."""
    await _get_or_404(db, User, user_id, "User")
    db_role = await _get_or_404(db, Role, assignment.role_id, "Role")
    if not db_role.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot assign an inactive role"
        )

    stmt = select(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == assignment.role_id
        )
    )
    result = await db.execute(stmt)
    db_assignment = result.scalars().first()

    if db_assignment:
        db_assignment.is_active = True
        db_assignment.assigned_by_id = current_user.id
    else:
        db_assignment = UserRoleAssignment(
            user_id=user_id,
            role_id=assignment.role_id,
            assigned_by_id=current_user.id
        )
        db.add(db_assignment)

    await db.commit()
    await db.refresh(db_assignment)
    await db.refresh(db_assignment, ["role"])

    _audit(background_tasks, request, db, current_user, "assign_role", "user", user_id,
           {"role_id": assignment.role_id, "role_code": db_role.code})
    return db_assignment


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_role_from_user(
    user_id: str,
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Revoke a role from a user (permission managers only). The assignment row is kept inactive."""
    stmt = select(UserRoleAssignment).where(
        and_(
            UserRoleAssignment.user_id == user_id,
            UserRoleAssignment.role_id == role_id,
            UserRoleAssignment.is_active.is_(True)
        )
    )
    result = await db.execute(stmt)
    db_assignment = result.scalars().first()
    if not db_assignment:
        raise HTTPException(status_code=404, detail="Role assignment not found")

    db_assignment.is_active = False
    await db.commit()

    _audit(background_tasks, request, db, current_user, "revoke_role", "user", user_id, {"role_id": role_id})


# ============================================================================
# Group Routes
# ============================================================================

@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Create a new permission group (permission managers only)."""
    try:
        db_group = PermissionGroup(**group.model_dump())
        db.add(db_group)
        await db.commit()
        await db.refresh(db_group)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Group with this code already exists"
        )

    _audit(background_tasks, request, db, current_user, "create", "group", db_group.id, group.model_dump())
    return db_group


@router.get("/groups", response_model=List[GroupResponse])
async def list_groups(
    skip: int = 0,
    limit: int = 100,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List permission groups."""
    stmt = select(PermissionGroup)
    if not include_inactive:
        stmt = stmt.where(PermissionGroup.is_active.is_(True))

    stmt = stmt.order_by(PermissionGroup.sort_order, PermissionGroup.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/groups/{group_id}", response_model=GroupWithGrants)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific group with its capability effects."""
    return await _get_or_404(db, PermissionGroup, group_id, "Group")


@router.put("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Update a group (permission managers only)."""
    db_group = await _get_or_404(db, PermissionGroup, group_id, "Group")

    update_data = group_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_group, key, value)

    await db.commit()
    await db.refresh(db_group)

    _audit(background_tasks, request, db, current_user, "update", "group", group_id, update_data)
    return db_group


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Deactivate a group (permission managers only). System default groups cannot be deleted."""
    db_group = await _get_or_404(db, PermissionGroup, group_id, "Group")

    if db_group.is_system_default:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete system default groups"
        )

    db_group.is_active = False
    await db.commit()

    _audit(background_tasks, request, db, current_user, "delete", "group", group_id, {"code": db_group.code})


@router.put("/groups/{group_id}/capabilities", response_model=GroupGrantResponse)
async def set_group_capability(
    group_id: str,
    grant: AssignCapabilityToGroup,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Allow or deny a capability through a group (permission managers only)."""
    await _get_or_404(db, PermissionGroup, group_id, "Group")
    await _get_or_404(db, Capability, grant.capability_id, "Capability")

    stmt = select(GroupCapability).where(
        and_(
            GroupCapability.group_id == group_id,
            GroupCapability.capability_id == grant.capability_id
        )
    )
    result = await db.execute(stmt)
    db_grant = result.scalars().first()

    if db_grant:
        db_grant.effect = grant.effect
    else:
        db_grant = GroupCapability(group_id=group_id, capability_id=grant.capability_id, effect=grant.effect)
        db.add(db_grant)

    await db.commit()
    await db.refresh(db_grant)
    await db.refresh(db_grant, ["capability"])

    _audit(background_tasks, request, db, current_user, "grant", "group", group_id,
           {"capability_id": grant.capability_id, "effect": grant.effect.value})
    return db_grant


@router.delete("/groups/{group_id}/capabilities/{capability_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_capability(
    group_id: str,
    capability_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Remove a capability effect from a group (permission managers only)."""
    stmt = select(GroupCapability).where(
        and_(
            GroupCapability.group_id == group_id,
            GroupCapability.capability_id == capability_id
        )
    )
    result = await db.execute(stmt)
    db_grant = result.scalars().first()
    if not db_grant:
        raise HTTPException(status_code=404, detail="Group has no effect for this capability")

    await db.delete(db_grant)
    await db.commit()

    _audit(background_tasks, request, db, current_user, "revoke", "group", group_id,
           {"capability_id": capability_id})


@router.post("/groups/{group_id}/users", status_code=status.HTTP_200_OK)
async def add_user_to_group(
    group_id: str,
    assignment: AssignUserToGroup,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Add a user to a group (permission managers only)."""
    await _get_or_404(db, PermissionGroup, group_id, "Group")
    await _get_or_404(db, User, assignment.user_id, "User")

    check_stmt = select(UserGroupMembership).where(
        and_(
            UserGroupMembership.user_id == assignment.user_id,
            UserGroupMembership.group_id == group_id
        )
    )
    check_result = await db.execute(check_stmt)
    if check_result.scalars().first():
        return {"message": "User already in group"}

    db.add(UserGroupMembership(user_id=assignment.user_id, group_id=group_id, assigned_by_id=current_user.id))
    await db.commit()

    _audit(background_tasks, request, db, current_user, "add_to_group", "user", assignment.user_id,
           {"group_id": group_id})
    return {"message": "User added to group successfully"}


@router.delete("/groups/{group_id}/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_from_group(
    group_id: str,
    user_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Remove a user from a group (permission managers only)."""
    stmt = select(UserGroupMembership).where(
        and_(
            UserGroupMembership.user_id == user_id,
            UserGroupMembership.group_id == group_id
        )
    )
    result = await db.execute(stmt)
    membership = result.scalars().first()
    if not membership:
        raise HTTPException(status_code=404, detail="User is not in this group")

    await db.delete(membership)
    await db.commit()

    _audit(background_tasks, request, db, current_user, "remove_from_group", "user", user_id,
           {"group_id": group_id})


@router.get("/users/{user_id}/groups", response_model=List[GroupResponse])
async def list_user_groups(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """List the groups a user belongs to."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    stmt = (
        select(PermissionGroup)
        .join(UserGroupMembership, UserGroupMembership.group_id == PermissionGroup.id)
        .where(UserGroupMembership.user_id == user_id)
        .order_by(PermissionGroup.sort_order, PermissionGroup.code)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


# ============================================================================
# Override Routes
# ============================================================================

@router.get("/users/{user_id}/overrides", response_model=List[OverrideResponse])
async def list_user_overrides(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """List per-user capability overrides."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    stmt = select(UserCapabilityOverride).where(UserCapabilityOverride.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.put("/users/{user_id}/overrides", response_model=OverrideResponse)
async def set_user_override(
    user_id: str,
    override: OverrideSet,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Allow or deny a capability for one user, ahead of roles and groups (permission managers only)."""
    await _get_or_404(db, User, user_id, "User")
    await _get_or_404(db, Capability, override.capability_id, "Capability")

    stmt = select(UserCapabilityOverride).where(
        and_(
            UserCapabilityOverride.user_id == user_id,
            UserCapabilityOverride.capability_id == override.capability_id
        )
    )
    result = await db.execute(stmt)
    db_override = result.scalars().first()

    if db_override:
        db_override.effect = override.effect
        db_override.reason = override.reason
        db_override.assigned_by_id = current_user.id
    else:
        db_override = UserCapabilityOverride(
            user_id=user_id,
            capability_id=override.capability_id,
            effect=override.effect,
            reason=override.reason,
            assigned_by_id=current_user.id
        )
        db.add(db_override)

    await db.commit()
    await db.refresh(db_override)
    await db.refresh(db_override, ["capability"])

    _audit(background_tasks, request, db, current_user, "set_override", "user", user_id,
           {"capability_id": override.capability_id, "effect": override.effect.value, "reason": override.reason})
    return db_override


@router.delete("/users/{user_id}/overrides/{capability_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_override(
    user_id: str,
    capability_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Remove a per-user override (permission managers only)."""
    stmt = select(UserCapabilityOverride).where(
        and_(
            UserCapabilityOverride.user_id == user_id,
            UserCapabilityOverride.capability_id == capability_id
        )
    )
    result = await db.execute(stmt)
    db_override = result.scalars().first()
    if not db_override:
        raise HTTPException(status_code=404, detail="Override not found")

    await db.delete(db_override)
    await db.commit()

    _audit(background_tasks, request, db, current_user, "remove_override", "user", user_id,
           {"capability_id": capability_id})


# ============================================================================
# Feature Visibility Routes
# ============================================================================

async def _upsert_feature_rule(
    db: AsyncSession,
    user_id: Optional[str],
    rule: FeatureVisibilitySet,
    current_user: User,
) -> FeatureVisibilityRule:
    owner = (
        FeatureVisibilityRule.user_id.is_(None) if user_id is None
        else FeatureVisibilityRule.user_id == user_id
    )
    stmt = select(FeatureVisibilityRule).where(
        and_(owner, FeatureVisibilityRule.feature_code == rule.feature_code)
    )
    result = await db.execute(stmt)
    db_rule = result.scalars().first()

    if db_rule:
        db_rule.visibility = rule.visibility
        db_rule.required_profile_percent = rule.required_profile_percent
        db_rule.reason = rule.reason
        db_rule.assigned_by_id = current_user.id
    else:
        db_rule = FeatureVisibilityRule(user_id=user_id, assigned_by_id=current_user.id, **rule.model_dump())
        db.add(db_rule)

    await db.commit()
    await db.refresh(db_rule)
    return db_rule


async def _delete_feature_rule(db: AsyncSession, user_id: Optional[str], feature_code: str):
    owner = (
        FeatureVisibilityRule.user_id.is_(None) if user_id is None
        else FeatureVisibilityRule.user_id == user_id
    )
    stmt = select(FeatureVisibilityRule).where(
        and_(owner, FeatureVisibilityRule.feature_code == feature_code)
    )
    result = await db.execute(stmt)
    db_rule = result.scalars().first()
    if not db_rule:
        raise HTTPException(status_code=404, detail="Feature rule not found")

    await db.delete(db_rule)
    await db.commit()


@router.get("/features", response_model=List[FeatureVisibilityResponse])
async def list_platform_feature_rules(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List platform-wide feature visibility rules."""
    stmt = (
        select(FeatureVisibilityRule)
        .where(FeatureVisibilityRule.user_id.is_(None))
        .order_by(FeatureVisibilityRule.feature_code)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@router.put("/features", response_model=FeatureVisibilityResponse)
async def set_platform_feature_rule(
    rule: FeatureVisibilitySet,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Set the platform-wide visibility of a feature (permission managers only)."""
    db_rule = await _upsert_feature_rule(db, None, rule, current_user)

    _audit(background_tasks, request, db, current_user, "set_feature", "feature", rule.feature_code,
           rule.model_dump(mode="json"))
    return db_rule


@router.delete("/features/{feature_code}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_platform_feature_rule(
    feature_code: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Remove the platform-wide rule of a feature (permission managers only)."""
    await _delete_feature_rule(db, None, feature_code)

    _audit(background_tasks, request, db, current_user, "remove_feature", "feature", feature_code)


@router.get("/users/{user_id}/features", response_model=List[FeatureVisibilityResponse])
async def list_user_feature_rules(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """List the feature visibility rules set for one user."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    stmt = (
        select(FeatureVisibilityRule)
        .where(FeatureVisibilityRule.user_id == user_id)
        .order_by(FeatureVisibilityRule.feature_code)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@router.put("/users/{user_id}/features", response_model=FeatureVisibilityResponse)
async def set_user_feature_rule(
    user_id: str,
    rule: FeatureVisibilitySet,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Set the visibility of a feature for one user (permission managers only)."""
    await _get_or_404(db, User, user_id, "User")
    db_rule = await _upsert_feature_rule(db, user_id, rule, current_user)

    _audit(background_tasks, request, db, current_user, "set_feature", "user", user_id,
           rule.model_dump(mode="json"))
    return db_rule


@router.delete("/users/{user_id}/features/{feature_code}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_feature_rule(
    user_id: str,
    feature_code: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Remove the feature rule of one user (permission managers only)."""
    await _delete_feature_rule(db, user_id, feature_code)

    _audit(background_tasks, request, db, current_user, "remove_feature", "user", user_id,
           {"feature_code": feature_code})


# ============================================================================
# Module Routes
# ============================================================================

@router.get("/modules", response_model=List[ModuleResponse])
async def list_modules(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List modules and their switches."""
    result = await db.execute(select(ModuleAccess).order_by(ModuleAccess.sort_order, ModuleAccess.module_key))
    return result.scalars().all()


@router.post("/modules", response_model=ModuleResponse, status_code=status.HTTP_201_CREATED)
async def create_module(
    module: ModuleCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Register a module (permission managers only)."""
    try:
        db_module = ModuleAccess(**module.model_dump())
        db.add(db_module)
        await db.commit()
        await db.refresh(db_module)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Module with this key already exists"
        )

    _audit(background_tasks, request, db, current_user, "create", "module", module.module_key, module.model_dump())
    return db_module


@router.put("/modules/{module_key}", response_model=ModuleResponse)
async def update_module(
    module_key: str,
    module_update: ModuleUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """Enable or disable a module, or change its required role (permission managers only)."""
    result = await db.execute(select(ModuleAccess).where(ModuleAccess.module_key == module_key))
    db_module = result.scalars().first()
    if not db_module:
        raise HTTPException(status_code=404, detail="Module not found")

    update_data = module_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_module, key, value)

    await db.commit()
    await db.refresh(db_module)

    log.info(f"Module {module_key} updated by {current_user.id}: {update_data}")
    _audit(background_tasks, request, db, current_user, "update", "module", module_key, update_data)
    return db_module


# ============================================================================
# Access Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.RATE_LIMIT)
async def check_permission(
    request: Request,
    check_request: PermissionCheckRequest,
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """
    Check if a user may perform an action on a capability.

    Module and feature gates are applied as well when named. The answer is
    the resolved grant data: the admin bypass of route guards is not applied.
    """
    user_id = check_request.user_id or current_user.id
    await _ensure_self_or_manager(user_id, current_user, resolver)

    result = await resolver.check(
        user_id,
        check_request.capability_code,
        check_request.action,
        feature_code=check_request.feature_code,
        module_key=check_request.module_key,
    )

    reason = None
    if not result.allowed:
        reason = f"Denied by {result.denied_by} check ({result.decision.value})"

    return PermissionCheckResponse(
        has_permission=result.allowed,
        decision=result.decision,
        source=result.source,
        denied_by=result.denied_by,
        reason=reason
    )


@router.get("/users/{user_id}/effective", response_model=UserEffectivePermissionsResponse)
async def get_user_effective_permissions(
    user_id: str,
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """Get the merged permission record of every capability a user has a grant for."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    effective = await resolver.effective_permissions(user_id)
    return UserEffectivePermissionsResponse(
        user_id=user_id,
        permissions=[EffectivePermissionResponse.from_effective(effective[code]) for code in sorted(effective)]
    )


@router.get("/users/{user_id}/snapshot", response_model=PermissionSnapshotResponse)
@limiter.limit(config.RATE_LIMIT)
async def get_user_snapshot(
    request: Request,
    user_id: str,
    features: Optional[List[str]] = Query(None, description="Feature codes to evaluate"),
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """Get the roles, allowed capability codes and feature decisions of a user."""
    await _ensure_self_or_manager(user_id, current_user, resolver)

    snapshot = await resolver.snapshot(user_id, features or config.SNAPSHOT_FEATURE_CODES)
    return PermissionSnapshotResponse(
        user_id=user_id,
        roles=snapshot.roles,
        permissions=snapshot.permissions,
        features={code: FeatureDecisionResponse.from_decision(d) for code, d in snapshot.features.items()}
    )


@router.get("/modules/{module_key}/access", response_model=ModuleAccessCheckResponse)
async def check_module_access(
    module_key: str,
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """Check if the current user may enter a module."""
    decision = await resolver.module_decision(current_user.id, module_key)
    return ModuleAccessCheckResponse(module_key=module_key, allowed=decision.is_allowed, decision=decision)


@router.get("/features/{feature_code}/access", response_model=FeatureDecisionResponse)
async def check_feature_access(
    feature_code: str,
    resolver: AccessResolver = Depends(get_access_resolver),
    current_user: User = Depends(get_current_user)
):
    """Check if a feature is visible to the current user."""
    decision = await resolver.check_feature(current_user.id, feature_code)
    return FeatureDecisionResponse.from_decision(decision)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_permission_manager)
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total
    )
