"""Connection configuration per platform: credentials, toggles, connectivity."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.api.deps import (
    Principal,
    get_adapter_factory,
    http_error,
    require_admin,
    require_operator,
    require_viewer,
)
from itsm_sync.core.encryption import is_encrypted
from itsm_sync.core.errors import ValidationError
from itsm_sync.database import get_db
from itsm_sync.models.connection import Connection, ConnectionStatus
from itsm_sync.services.connection_registry import PLATFORMS, ConnectionRegistry

router = APIRouter()

# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ConnectionConfigure(BaseModel):
    instance_url: str = Field(..., min_length=1, max_length=500)
    auth_type: str = Field("basic", pattern=r"^(basic|oauth2)$")
    username: str = ""
    password: str = ""
    email: str = ""
    api_token: str = ""
    access_token: str = ""
    credential_ref: str | None = None
    options: dict | None = None
    sync_enabled: bool | None = None
    auto_assignment_enabled: bool | None = None


class ConnectionUpdate(BaseModel):
    sync_enabled: bool | None = None
    auto_assignment_enabled: bool | None = None
    options: dict | None = None


class GroupToggle(BaseModel):
    enabled: bool


class ConnectionOut(BaseModel):
    id: str
    platform: str
    instance_url: str
    status: str
    sync_enabled: bool
    auto_assignment_enabled: bool
    group_sync: dict
    options: dict
    credential_source: str | None = None
    last_tested_at: str | None = None
    last_error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ConnectionTestOut(BaseModel):
    ok: bool
    message: str
    connection: ConnectionOut


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _credential_source(ref: str | None) -> str | None:
    if not ref:
        return None
    return "encrypted" if is_encrypted(ref) else "environment"


def _conn_to_out(conn: Connection) -> ConnectionOut:
    return ConnectionOut(
        id=str(conn.id),
        platform=conn.platform,
        instance_url=conn.instance_url,
        status=conn.status,
        sync_enabled=conn.sync_enabled,
        auto_assignment_enabled=conn.auto_assignment_enabled,
        group_sync=conn.group_sync or {},
        options=conn.options or {},
        credential_source=_credential_source(conn.credential_ref),
        last_tested_at=conn.last_tested_at.isoformat() if conn.last_tested_at else None,
        last_error=conn.last_error,
        created_at=conn.created_at.isoformat() if conn.created_at else None,
        updated_at=conn.updated_at.isoformat() if conn.updated_at else None,
    )


def _check_platform(platform: str) -> None:
    if platform not in PLATFORMS:
        raise HTTPException(404, f"Unknown platform: {platform}")


async def _get_or_404(registry: ConnectionRegistry, platform: str) -> Connection:
    _check_platform(platform)
    conn = await registry.get(platform)
    if conn is None:
        raise HTTPException(404, "Connection not found")
    return conn


def _credentials(body: ConnectionConfigure) -> dict:
    if body.auth_type == "oauth2":
        return {"auth_type": "oauth2", "access_token": body.access_token} if body.access_token else {}
    username = body.username or body.email
    password = body.password or body.api_token
    if not username or not password:
        return {}
    return {"auth_type": "basic", "username": username, "password": password}


async def _run_test(registry, conn: Connection, adapter_factory) -> tuple[bool, str]:
    adapter = adapter_factory(conn.platform, registry)
    ok, message = await adapter.test_connection(conn)
    await registry.record_test(conn, ok, message)
    return ok, message


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=list[ConnectionOut])
async def list_connections(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    return [_conn_to_out(c) for c in await registry.list_connections()]


@router.get("/{platform}", response_model=ConnectionOut)
async def get_connection(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    return _conn_to_out(await _get_or_404(registry, platform))


@router.put("/{platform}", response_model=ConnectionOut)
async def configure_connection(
    platform: str,
    body: ConnectionConfigure,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    _check_platform(platform)
    registry = ConnectionRegistry(db, principal.organization_id)
    try:
        conn = await registry.configure(
            platform,
            body.instance_url,
            credentials=_credentials(body),
            credential_ref=body.credential_ref,
            options=body.options,
            sync_enabled=body.sync_enabled,
            auto_assignment_enabled=body.auto_assignment_enabled,
        )
    except ValidationError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return _conn_to_out(conn)


@router.patch("/{platform}", response_model=ConnectionOut)
async def update_connection(
    platform: str,
    body: ConnectionUpdate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    conn = await _get_or_404(registry, platform)
    if body.sync_enabled is not None:
        conn.sync_enabled = body.sync_enabled
    if body.auto_assignment_enabled is not None:
        conn.auto_assignment_enabled = body.auto_assignment_enabled
    if body.options is not None:
        conn.options = dict(body.options)
    await db.commit()
    return _conn_to_out(conn)


@router.put("/{platform}/groups/{product_group}", response_model=ConnectionOut)
async def set_group_sync(
    platform: str,
    product_group: str,
    body: GroupToggle,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    conn = await _get_or_404(registry, platform)
    try:
        await registry.set_group_sync(conn, product_group, body.enabled)
    except ValidationError as exc:
        raise http_error(exc)
    await db.commit()
    return _conn_to_out(conn)


@router.post("/{platform}/test", response_model=ConnectionTestOut)
async def test_connection(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
    adapter_factory=Depends(get_adapter_factory),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    conn = await _get_or_404(registry, platform)
    ok, message = await _run_test(registry, conn, adapter_factory)
    await db.commit()
    return ConnectionTestOut(ok=ok, message=message, connection=_conn_to_out(conn))


@router.post("/{platform}/connect", response_model=ConnectionTestOut)
async def connect(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
    adapter_factory=Depends(get_adapter_factory),
):
    """Verify connectivity and, on success, turn sync on."""
    registry = ConnectionRegistry(db, principal.organization_id)
    conn = await _get_or_404(registry, platform)
    ok, message = await _run_test(registry, conn, adapter_factory)
    if ok:
        conn.sync_enabled = True
    await db.commit()
    return ConnectionTestOut(ok=ok, message=message, connection=_conn_to_out(conn))


@router.post("/{platform}/disconnect", response_model=ConnectionOut)
async def disconnect(
    platform: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    registry = ConnectionRegistry(db, principal.organization_id)
    conn = await _get_or_404(registry, platform)
    await registry.set_status(conn, ConnectionStatus.DISCONNECTED.value)
    await db.commit()
    return _conn_to_out(conn)
