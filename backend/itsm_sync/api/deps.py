from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from itsm_sync.adapters.factory import build_adapter
from itsm_sync.config import settings
from itsm_sync.core.errors import MissingRequiredField, QueueStateError, SyncError, ValidationError
from itsm_sync.core.security import decode_access_token, role_at_least


@dataclass(frozen=True)
class Principal:
    """The operator behind a request, taken from the bearer token."""

    email: str
    role: str
    organization_id: str


async def get_current_principal(request: Request) -> Principal:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_access_token(auth[7:])
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return Principal(
        email=email,
        role=payload.get("role", "viewer"),
        organization_id=payload.get("org") or settings.DEFAULT_ORGANIZATION_ID,
    )


def require_role(minimum: str):
    """Dependency factory that rejects principals below ``minimum``."""

    async def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_at_least(principal.role, minimum):
            raise HTTPException(status_code=403, detail=f"{minimum.capitalize()} role required")
        return principal

    return _check


require_viewer = require_role("viewer")
require_operator = require_role("operator")
require_admin = require_role("admin")


def get_adapter_factory():
    """Overridden in tests to inject adapters with a mock transport."""
    return build_adapter


def http_error(exc: SyncError) -> HTTPException:
    """Translate a sync error raised by a service into an HTTP response."""
    if isinstance(exc, QueueStateError):
        return HTTPException(409, exc.message)
    if isinstance(exc, MissingRequiredField):
        return HTTPException(422, exc.message)
    if isinstance(exc, ValidationError):
        return HTTPException(400, exc.message)
    return HTTPException(502, exc.message)
