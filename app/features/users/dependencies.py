"""
FastAPI dependencies for identifying the calling user.

Authentication happens upstream: the gateway forwards the authenticated
user id in the principal header (``X-User-Id`` by default).
"""
from typing import Annotated
from datetime import datetime, timezone
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.models import User


async def get_principal_id(request: Request) -> str:
    """
    Read the principal id forwarded by the gateway.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    principal_id = request.headers.get(config.PRINCIPAL_HEADER, "").strip()
    if not principal_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing principal header",
        )
    return principal_id


async def get_current_user(
    principal_id: Annotated[str, Depends(get_principal_id)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current user from the principal header.

    This dependency:
    1. Reads the forwarded principal id
    2. Looks up the user in the local database
    3. Rejects deactivated accounts
    4. Updates last_seen_at timestamp

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    result = await db.execute(
        select(User).where(User.id == principal_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown principal",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    user.last_seen_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)

    return user


async def get_current_admin_user(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    Require admin privileges.

    Usage:
        @router.delete("/roles/{role_id}")
        async def delete_role(
            role_id: str,
            admin: User = Depends(get_current_admin_user)
        ):
            # Only admins can access this endpoint
            ...
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return user
