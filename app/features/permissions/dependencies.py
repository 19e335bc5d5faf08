"""
Permission checking dependencies.

Implements:
- Resolver construction per request
- FastAPI dependencies for capability, module and feature protection
- Audit logging helpers
"""
from typing import Dict, Any, Optional, List
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import AuditLog
from app.features.permissions.resolver import AccessResolver, Action
from app.features.permissions.store import SqlAccessStore
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Resolver
# ============================================================================

async def get_access_resolver(db: AsyncSession = Depends(get_db)) -> AccessResolver:
    """
    Build an AccessResolver bound to the request's database session.

    Override this dependency in tests to resolve against another store.
    """
    return AccessResolver(SqlAccessStore(db))


async def has_permission(
    resolver: AccessResolver,
    user: User,
    capability_code: str,
    action: Action | str,
) -> bool:
    """
    Check if user may perform an action on a capability.

    Args:
        resolver: Access resolver
        user: User object
        capability_code: Capability code (e.g., "orders", "quotes")
        action: create, read, update or delete

    Returns:
        True if user has permission, False otherwise
    """
    # Platform admins have all capabilities. Module and feature gates still apply.
    if user.is_admin:
        log.debug(f"User {user.id} is admin - granted {action} on {capability_code}")
        return True

    return await resolver.has_permission(user.id, capability_code, action)


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(capability_code: str, action: Action | str = Action.READ):
    """
    FastAPI dependency to require a capability action.

    Usage:
        @router.post("/orders")
        async def create_order(
            user: User = Depends(require_permission("orders", "create"))
        ):
            pass

    Args:
        capability_code: Capability code
        action: Action (aliases such as "view" and "edit" are accepted)

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        HTTPException: 403 if user doesn't have permission
    """
    parsed = Action.parse(action)

    async def permission_dependency(
        resolver: AccessResolver = Depends(get_access_resolver),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if not await has_permission(resolver, current_user, capability_code, parsed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {parsed.value} on {capability_code}"
            )
        return current_user

    return permission_dependency


def require_any_permission(permissions: List[tuple[str, str]]):
    """
    FastAPI dependency to require ANY of the specified capability actions.

    Usage:
        @router.get("/reports")
        async def get_reports(
            user: User = Depends(require_any_permission([("reports", "read"), ("orders", "read")]))
        ):
            pass
    """
    async def permission_dependency(
        resolver: AccessResolver = Depends(get_access_resolver),
        current_user: User = Depends(get_current_user)
    ) -> User:
        for capability_code, action in permissions:
            if await has_permission(resolver, current_user, capability_code, action):
                return current_user

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: requires one of {permissions}"
        )

    return permission_dependency


def require_module(module_key: str):
    """
    FastAPI dependency to require access to a module.

    Admins are not exempt: a disabled module is closed to everyone.

    Raises:
        HTTPException: 403 if the module is disabled, unknown, or needs a role the user lacks
    """
    async def module_dependency(
        resolver: AccessResolver = Depends(get_access_resolver),
        current_user: User = Depends(get_current_user)
    ) -> User:
        decision = await resolver.module_decision(current_user.id, module_key)
        if not decision.is_allowed:
            log.debug(f"User {current_user.id} refused module {module_key}: {decision.value}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Module access denied: {module_key}"
            )
        return current_user

    return module_dependency


def require_feature(feature_code: str):
    """
    FastAPI dependency to require a visible feature.

    Raises:
        HTTPException: 403 if the feature is hidden or restricted above the user's profile completion
    """
    async def feature_dependency(
        resolver: AccessResolver = Depends(get_access_resolver),
        current_user: User = Depends(get_current_user)
    ) -> User:
        feature = await resolver.check_feature(current_user.id, feature_code)
        if not feature.allowed:
            detail = f"Feature not available: {feature_code}"
            if feature.required_profile_percent is not None:
                detail += f" (requires {feature.required_profile_percent}% profile completion)"
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return current_user

    return feature_dependency


# Capability that opens the permission administration routes to non-admin users
MANAGE_PERMISSIONS = "MANAGE_PERMISSIONS"

# Admins, or holders of MANAGE_PERMISSIONS:update
get_permission_manager = require_permission(MANAGE_PERMISSIONS, Action.UPDATE)


async def can_manage_permissions(resolver: AccessResolver, user: User) -> bool:
    """Check if user may administer permissions of other users."""
    return await has_permission(resolver, user, MANAGE_PERMISSIONS, Action.UPDATE)


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign")
        resource_type: Type of resource (e.g., "role", "override", "module")
        resource_id: ID of the resource
        details: Additional details
        ip_address: Client IP address
        user_agent: Client user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}")

    return audit_log
