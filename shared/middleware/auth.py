"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.

The JWT is validated here and turned into an explicit ActorContext that
is threaded through the activity and notification services. The same
context is parked on request.state so the activity interceptor can
attribute the request without reaching for globals.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import Branch, User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ActorContext:
    """Who is making the request, as seen by the audit trail."""
    user_id: uuid.UUID
    email: str
    role: UserRole
    branch_id: Optional[uuid.UUID] = None
    branch_name: Optional[str] = None
    pg_id: Optional[uuid.UUID] = None


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        token_data = TokenData(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if await RedisCache(redis).is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return token_data


async def get_current_actor(
    request: Request,
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> ActorContext:
    """Load the User row behind the token and expose it as an ActorContext."""
    try:
        user_id = uuid.UUID(token_data.user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

    result = await db.execute(
        select(User, Branch.name)
        .outerjoin(Branch, Branch.id == User.branch_id)
        .where(User.id == user_id)
    )
    row = result.one_or_none()

    if not row:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    user, branch_name = row
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    actor = ActorContext(
        user_id=user.id,
        email=user.email,
        role=UserRole(user.role),
        branch_id=user.branch_id,
        branch_name=branch_name,
        pg_id=user.pg_id,
    )
    request.state.actor = actor
    return actor


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        actor: ActorContext = Depends(get_current_actor),
    ) -> ActorContext:
        if actor.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return actor


# Convenience role dependencies
require_staff = RoleRequired(UserRole.ADMIN, UserRole.SUPERADMIN, UserRole.SUPPORT)
require_admin_or_superadmin = RoleRequired(UserRole.ADMIN, UserRole.SUPERADMIN)
require_superadmin = RoleRequired(UserRole.SUPERADMIN)
