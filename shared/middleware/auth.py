"""
shared/middleware/auth.py
Who is calling. Identity is issued elsewhere; here we verify the bearer JWT,
consult the Redis deny-list and load the acting user. Failures are raised as
domain errors so they share the error envelope with everything else.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisStore, get_redis
from shared.exceptions import NotAuthenticated, PermissionDenied
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    """Claims of a verified access token."""

    sub: UUID
    role: UserRole
    email: str
    jti: str
    exp: datetime

    def remaining_seconds(self, now: datetime) -> int:
        return max(int((self.exp - now).total_seconds()), 0)


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    redis=Depends(get_redis),
) -> Principal:
    if credentials is None:
        raise NotAuthenticated("Authentication required")

    try:
        principal = Principal.model_validate(verify_access_token(credentials.credentials))
    except (JWTError, PydanticValidationError):
        raise NotAuthenticated("Invalid or expired token", code="invalid_token")

    if await RedisStore(redis).is_token_revoked(principal.jti):
        raise NotAuthenticated("Token has been revoked", code="token_revoked")
    return principal


async def get_current_user(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, principal.sub)
    if user is None:
        raise NotAuthenticated("User not found", code="unknown_user")
    if not user.is_active:
        raise PermissionDenied("User account is inactive", code="inactive_user")
    return user


class RoleRequired:
    """Dependency that admits only the listed roles."""

    def __init__(self, *roles: UserRole):
        self.roles = frozenset(roles)

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            raise PermissionDenied(
                "Your role cannot perform this action",
                details={"allowed_roles": sorted(r.value for r in self.roles)},
            )
        return current_user


require_customer = RoleRequired(UserRole.CUSTOMER)
require_tour_guide = RoleRequired(UserRole.TOUR_GUIDE)
require_field_staff = RoleRequired(UserRole.TOUR_GUIDE, UserRole.DRIVER)
require_staff = RoleRequired(UserRole.STAFF, UserRole.ADMIN)
