"""Read side: audit trail, sync events, integration health and the live event stream."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.api.deps import Principal, require_viewer
from itsm_sync.core.security import decode_access_token
from itsm_sync.database import get_db
from itsm_sync.models.sync_log import ItsmAuditLog, ItsmSyncEvent
from itsm_sync.services import audit_service
from itsm_sync.services.event_bus import event_bus

router = APIRouter()


def _audit_to_dict(entry: ItsmAuditLog) -> dict:
    return {
        "id": str(entry.id),
        "platform": entry.platform,
        "action": entry.action,
        "trace_id": entry.trace_id,
        "external_id": entry.external_id,
        "ticket_id": entry.ticket_id,
        "user_email": entry.user_email,
        "outcome": entry.outcome,
        "details": entry.details,
        "product_group": entry.product_group,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _event_to_dict(event: ItsmSyncEvent) -> dict:
    return {
        "id": str(event.id),
        "platform": event.platform,
        "event_type": event.event_type,
        "status": event.status,
        "ticket_id": event.ticket_id,
        "external_id": event.external_id,
        "product_group": event.product_group,
        "retry_count": event.retry_count,
        "queue_item_id": str(event.queue_item_id) if event.queue_item_id else None,
        "trace_id": event.trace_id,
        "details": event.details,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


@router.get("/audit-logs")
async def list_audit_logs(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
    platform: str | None = Query(None),
    trace_id: str | None = Query(None),
    outcome: str | None = Query(None),
    action: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    entries, total = await audit_service.get_audit_logs(
        db,
        principal.organization_id,
        platform=platform,
        trace_id=trace_id,
        outcome=outcome,
        action=action,
        since=since,
        until=until,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return {
        "items": [_audit_to_dict(e) for e in entries],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/sync-events")
async def list_sync_events(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
    platform: str | None = Query(None),
    status: str | None = Query(None),
    product_group: str | None = Query(None),
    since: datetime | None = Query(None),
    until: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    events, total = await audit_service.get_sync_events(
        db,
        principal.organization_id,
        platform=platform,
        status=status,
        product_group=product_group,
        since=since,
        until=until,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return {
        "items": [_event_to_dict(e) for e in events],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/sync-health")
async def sync_health(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    return {"platforms": await audit_service.health_summary(db, principal.organization_id)}


@router.get("/events/stream")
async def event_stream(request: Request, token: str = Query(...)):
    """SSE endpoint. Accepts token via query parameter because EventSource cannot set headers."""
    if decode_access_token(token) is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    sub_id, queue = event_bus.subscribe()

    async def generate():
        async for data in event_bus.stream(sub_id, queue):
            if await request.is_disconnected():
                break
            yield data

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
