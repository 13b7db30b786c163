"""Operator bearer tokens and inbound webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import jwt

from itsm_sync.config import settings

TOKEN_ISSUER = "itsm-sync"
TOKEN_AUDIENCE = "itsm-sync"
ROLES = ("viewer", "operator", "admin")


def create_access_token(
    email: str,
    role: str = "operator",
    organization_id: str | None = None,
    expires_minutes: int = 60,
) -> str:
    """Issue an HS256 token. Used by the dashboard backend and by tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "role": role,
        "org": organization_id or settings.DEFAULT_ORGANIZATION_ID,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm="HS256")


def decode_access_token(token: str) -> dict | None:
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=["HS256"],
            audience=TOKEN_AUDIENCE,
            issuer=TOKEN_ISSUER,
        )
    except jwt.PyJWTError:
        return None


def role_at_least(role: str, minimum: str) -> bool:
    if role not in ROLES:
        return False
    return ROLES.index(role) >= ROLES.index(minimum)


def sign_webhook_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an ``sha256=<hex>`` HMAC header. An empty secret disables the check."""
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign_webhook_body(body, secret), signature.strip())
