"""
FastAPI dependencies. Injected into route handlers.
"""

import hmac

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import AuthenticatedUser, get_current_user
from .config import get_settings
from .database import get_db as _get_db


async def get_db() -> AsyncSession:
    """Yields an async DB session per request."""
    async for session in _get_db():
        yield session


async def get_user(
    authorization: str = Header(default=""),
) -> AuthenticatedUser:
    """
    Resolve authenticated user from Authorization header.
    Returns dev user if FF_USE_AUTH0=false.
    """
    try:
        return await get_current_user(authorization)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_tenant(
    user: AuthenticatedUser = Depends(get_user),
) -> AuthenticatedUser:
    """Same as get_user, but enforces tenant_id is present."""
    if not user.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization associated with this user",
        )
    return user


async def require_cron_or_admin(
    x_cron_secret: str = Header(default=""),
    authorization: str = Header(default=""),
) -> str:
    """
    Gate for scheduled jobs. A matching X-Cron-Secret header passes without a user;
    otherwise the caller must be an authenticated admin. Returns who triggered it.
    """
    secret = get_settings().cron_secret
    if secret and x_cron_secret and hmac.compare_digest(secret, x_cron_secret):
        return "cron"

    user = await get_user(authorization)
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden. Admin access required.",
        )
    return f"admin:{user.user_id}"
