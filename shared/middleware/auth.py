"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
JWT is validated here; routes receive a loaded, active User.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import TokenDenyList, get_redis
from shared.domain.access_policy import Actor
from shared.exceptions import AuthenticationError, ForbiddenError
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict, raw: str):
        self.user_id: UUID = UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.jti: Optional[str] = payload.get("jti")
        self.payload = payload
        self.raw = raw


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise AuthenticationError("Access token required")

    try:
        payload = verify_access_token(credentials.credentials)
        token_data = TokenData(payload, credentials.credentials)
    except (JWTError, KeyError, ValueError):
        raise AuthenticationError("Invalid or expired token")

    if token_data.jti and await TokenDenyList(redis).is_revoked(token_data.jti):
        raise AuthenticationError("Token has been revoked")

    return token_data


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    user = await db.get(User, token_data.user_id)

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise ForbiddenError("Account has been deactivated")
    return user


async def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        request: Request,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            if UserRole.ADMIN in self.roles and len(self.roles) == 1:
                logger.warning(
                    f"Non-admin {current_user.id} ({current_user.role.value}) denied on {request.url.path}"
                )
            raise ForbiddenError(f"Required role: {[r.value for r in self.roles]}")
        return current_user


# Convenience role dependencies
require_customer = RoleRequired(UserRole.CUSTOMER)
require_helper = RoleRequired(UserRole.HELPER)
require_admin = RoleRequired(UserRole.ADMIN)


async def require_verified_helper(current_user: User = Depends(require_helper)) -> User:
    if not current_user.is_verified:
        raise ForbiddenError("Helper account is not verified")
    return current_user
