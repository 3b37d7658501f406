"""
services/auth/router.py
Session endpoints for holders of an access token. Tokens are minted by the
identity service; this service can only retire them early.
"""

import logging

from fastapi import APIRouter, Depends

from config.redis_client import RedisStore, get_redis
from shared.middleware.auth import Principal, get_principal
from shared.schemas.schemas import MessageResponse
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    principal: Principal = Depends(get_principal),
    redis=Depends(get_redis),
):
    """Deny-list the presented access token until it would have expired anyway."""
    ttl = principal.remaining_seconds(utcnow())
    if ttl > 0:
        await RedisStore(redis).revoke_token(principal.jti, ttl)
    logger.info(f"Access token revoked for user {principal.sub}")
    return MessageResponse(message="Logged out")
