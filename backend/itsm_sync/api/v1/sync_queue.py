"""Outbound queue: enqueue, inspect, cancel and retry deliveries."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.api.deps import Principal, http_error, require_operator, require_viewer
from itsm_sync.core.errors import SyncError
from itsm_sync.database import get_db
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.services import sync_queue_service

router = APIRouter()


class EnqueueIn(BaseModel):
    platform: str = Field(..., pattern=r"^(servicenow|jira)$")
    action: str = Field(..., pattern=r"^(create|update|comment|sync_response)$")
    ticket_id: str = Field(..., min_length=1, max_length=100)
    record: dict | None = None
    payload: dict | None = None
    external_id: str | None = Field(None, max_length=100)
    product_group: str | None = None
    trace_id: str | None = Field(None, max_length=64)


class QueueItemOut(BaseModel):
    id: str
    platform: str
    action: str
    ticket_id: str
    external_id: str | None = None
    payload: dict
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    trace_id: str
    product_group: str | None = None
    requested_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None


def _item_to_out(item: SyncQueueItem) -> QueueItemOut:
    return QueueItemOut(
        id=str(item.id),
        platform=item.platform,
        action=item.action,
        ticket_id=item.ticket_id,
        external_id=item.external_id,
        payload=item.payload or {},
        status=item.status,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        next_retry_at=item.next_retry_at.isoformat() if item.next_retry_at else None,
        error_message=item.error_message,
        error_kind=item.error_kind,
        trace_id=item.trace_id,
        product_group=item.product_group,
        requested_by=item.requested_by,
        created_at=item.created_at.isoformat() if item.created_at else None,
        updated_at=item.updated_at.isoformat() if item.updated_at else None,
        completed_at=item.completed_at.isoformat() if item.completed_at else None,
    )


async def _get_item_or_404(db: AsyncSession, organization_id: str, item_id: uuid.UUID) -> SyncQueueItem:
    item = await sync_queue_service.get_item(db, organization_id, item_id)
    if item is None:
        raise HTTPException(404, "Queue item not found")
    return item


@router.get("")
async def list_queue(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
    platform: str | None = Query(None),
    status: str | None = Query(None),
    ticket_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    items, total = await sync_queue_service.list_items(
        db,
        principal.organization_id,
        platform=platform,
        status=status,
        ticket_id=ticket_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    counts = await sync_queue_service.status_counts(db, principal.organization_id, platform)
    return {
        "items": [_item_to_out(i) for i in items],
        "total": total,
        "page": page,
        "page_size": page_size,
        "counts": counts,
    }


@router.post("")
async def enqueue(
    body: EnqueueIn,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    try:
        item = await sync_queue_service.enqueue(
            db,
            organization_id=principal.organization_id,
            user_email=principal.email,
            **body.model_dump(),
        )
    except SyncError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    if item is None:
        return {"queued": False, "item": None}
    return JSONResponse(
        status_code=201,
        content={"queued": True, "item": _item_to_out(item).model_dump()},
    )


@router.post("/retry-failed")
async def retry_failed(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
    platform: str | None = Query(None),
):
    items = await sync_queue_service.retry_all(
        db, principal.organization_id, platform, principal.email
    )
    await db.commit()
    return {"requeued": len(items), "items": [_item_to_out(i) for i in items]}


@router.get("/{item_id}", response_model=QueueItemOut)
async def get_queue_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    return _item_to_out(await _get_item_or_404(db, principal.organization_id, item_id))


@router.post("/{item_id}/cancel", response_model=QueueItemOut)
async def cancel_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    item = await _get_item_or_404(db, principal.organization_id, item_id)
    try:
        await sync_queue_service.cancel(db, item, principal.email)
    except SyncError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return _item_to_out(item)


@router.post("/{item_id}/retry", response_model=QueueItemOut)
async def retry_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_operator),
):
    item = await _get_item_or_404(db, principal.organization_id, item_id)
    try:
        await sync_queue_service.retry(db, item, principal.email)
    except SyncError as exc:
        await db.rollback()
        raise http_error(exc)
    await db.commit()
    return _item_to_out(item)
