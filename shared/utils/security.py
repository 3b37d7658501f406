"""
shared/utils/security.py
Access-token verification and Chapa webhook signatures.

Tokens are minted by the identity service with the shared JWT secret. The
minting helper here exists for operator tooling and the test suite.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings

ACCESS_TOKEN_TYPE = "access"


# ── Access tokens ─────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    extra: Optional[dict] = None,
    expires_in: Optional[timedelta] = None,
) -> tuple[str, str]:
    """Returns (token, jti). The jti is what the Redis deny-list keys on."""
    issued_at = datetime.now(timezone.utc)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + (expires_in or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    claims.update(extra or {})
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Decode a bearer token. Raises JWTError when it is bad, expired, or not an access token."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise JWTError(f"Expected an {ACCESS_TOKEN_TYPE} token")
    return claims


# ── Chapa webhook ─────────────────────────────────────────────

def sign_webhook_body(payload_body: bytes, secret: Optional[str] = None) -> str:
    key = secret if secret is not None else settings.CHAPA_WEBHOOK_SECRET
    return hmac.new(key.encode(), payload_body, hashlib.sha256).hexdigest()


def verify_gateway_webhook_signature(payload_body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_webhook_body(payload_body), signature.strip().lower())
