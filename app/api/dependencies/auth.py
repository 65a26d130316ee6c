"""
FastAPI dependencies for bearer-JWT authentication of app users

Usage:
    @router.get("/earnings")
    async def earnings(
        driver: User = Depends(require_driver),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import verify_token
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User, UserRole

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to an active user.

    Raises 401 for a missing, invalid or expired token and 403 when the user
    is inactive or the token role no longer matches the stored role.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(User).where(User.id == token_data.user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        logger.error(
            "Access denied, user inactive or missing",
            extra_data={"user_id": token_data.user_id, "user_found": user is not None},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is not active")

    if user.role.value != token_data.role:
        logger.error(
            "Access denied, role changed since token was issued",
            extra_data={"user_id": user.id, "token_role": token_data.role, "role": user.role.value},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token role does not match user")
    return user


async def require_client(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.CLIENT:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Client access only")
    return user


async def require_driver(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.DRIVER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Driver access only")
    return user
