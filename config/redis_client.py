"""
config/redis_client.py
Async Redis connection plus the two key families this service owns:
revoked access-token ids and per-IP request counters.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis

from config.settings import settings

KEY_PREFIX = "tourbook"

_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global _client
    _client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    await _client.ping()


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency. Fails loudly if the lifespan hook never ran."""
    if _client is None:
        raise RuntimeError("Redis not initialized; init_redis() must run at startup")
    return _client


def current_redis() -> Optional[aioredis.Redis]:
    """Client for middleware and health checks, which degrade instead of failing."""
    return _client


async def ping_redis() -> str:
    if _client is None:
        return "disabled"
    await _client.ping()
    return "ok"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int


class RedisStore:
    """Key layout for everything this service keeps in Redis."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @staticmethod
    def _key(*parts: str) -> str:
        return ":".join((KEY_PREFIX, *parts))

    # ── Access-token deny-list ────────────────────────────────

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        await self.client.setex(self._key("revoked", jti), ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(self._key("revoked", jti)))

    # ── Request counters ──────────────────────────────────────

    async def hit(self, bucket: str, limit: int, window_seconds: int = 60) -> RateLimitResult:
        """Count one request in a fixed window and report what is left of it."""
        key = self._key("rate", bucket)
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return RateLimitResult(allowed=count <= limit, remaining=max(limit - count, 0))
