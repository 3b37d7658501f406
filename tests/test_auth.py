"""
tests/test_auth.py
Tests for bearer-token authentication, the Redis deny-list, role checks,
and the public health/root endpoints.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisStore
from shared.models.models import User
from shared.utils.security import create_access_token
from tests.conftest import FakeRedis, auth_headers


@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient):
    """Protected endpoints return 401 without a token."""
    response = await client.get("/bookings")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_returns_401(client: AsyncClient):
    """Malformed or tampered JWT returns 401."""
    response = await client.get(
        "/bookings", headers={"Authorization": "Bearer not.a.valid.token"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_non_access_token_rejected(client: AsyncClient, customer: User):
    token, _ = create_access_token(
        str(customer.id), customer.role.value, customer.email, extra={"type": "refresh"}
    )
    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_revoked_token_returns_401(
    client: AsyncClient, customer: User, fake_redis: FakeRedis
):
    token, jti = create_access_token(str(customer.id), customer.role.value, customer.email)
    await RedisStore(fake_redis).revoke_token(jti, 900)

    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has been revoked"


@pytest.mark.asyncio
async def test_token_for_unknown_user(client: AsyncClient):
    token, _ = create_access_token(str(uuid.uuid4()), "customer", "ghost@test.com")
    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inactive_user_forbidden(client: AsyncClient, customer: User, db: AsyncSession):
    customer.is_active = False
    db.add(customer)
    await db.commit()

    response = await client.get("/bookings", headers=auth_headers(customer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_staff_only_endpoint_rejects_guide(client: AsyncClient, guide: User):
    response = await client.get("/payments/refund-requests", headers=auth_headers(guide))
    assert response.status_code == 403


# ── Public endpoints ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert data["payment_gateway"] in ("configured", "test_mode")


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/health"


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Process-Time"].endswith("ms")


@pytest.mark.asyncio
async def test_auth_errors_share_error_envelope(client: AsyncClient, guide: User):
    response = await client.get("/bookings")
    assert response.json()["code"] == "not_authenticated"
    assert response.headers["WWW-Authenticate"] == "Bearer"

    response = await client.get("/payments/refund-requests", headers=auth_headers(guide))
    body = response.json()
    assert body["code"] == "permission_denied"
    assert body["details"]["allowed_roles"] == ["admin", "staff"]


@pytest.mark.asyncio
async def test_revocation_is_keyed_by_jti(fake_redis: FakeRedis):
    store = RedisStore(fake_redis)
    await store.revoke_token("abc", 60)
    assert await store.is_token_revoked("abc") is True
    assert await store.is_token_revoked("other") is False


@pytest.mark.asyncio
async def test_logout_revokes_presented_token(
    client: AsyncClient, customer: User, fake_redis: FakeRedis
):
    token, jti = create_access_token(str(customer.id), customer.role.value, customer.email)
    headers = {"Authorization": f"Bearer {token}"}

    response = await client.post("/auth/logout", headers=headers)
    assert response.status_code == 200
    assert 0 < fake_redis.ttls[f"tourbook:revoked:{jti}"] <= 15 * 60

    response = await client.get("/bookings", headers=headers)
    assert response.status_code == 401
    assert response.json()["code"] == "token_revoked"

    fresh = await client.get("/bookings", headers=auth_headers(customer))
    assert fresh.status_code == 200


@pytest.mark.asyncio
async def test_logout_requires_token(client: AsyncClient, fake_redis: FakeRedis):
    response = await client.post("/auth/logout")
    assert response.status_code == 401
    assert fake_redis.store == {}
