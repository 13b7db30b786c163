"""Audit trail and sync event store."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.models.base import utcnow
from itsm_sync.models.connection import Platform
from itsm_sync.models.sync_log import ItsmAuditLog, ItsmSyncEvent, SyncEventStatus
from itsm_sync.models.sync_queue import ACTIVE_STATUSES, QueueStatus, SyncQueueItem


async def record_audit(
    db: AsyncSession,
    *,
    organization_id: str,
    platform: str,
    action: str,
    trace_id: str,
    outcome: str,
    user_email: str,
    external_id: str | None = None,
    ticket_id: str | None = None,
    details: str | None = None,
    product_group: str | None = None,
) -> ItsmAuditLog:
    entry = ItsmAuditLog(
        organization_id=organization_id,
        platform=platform,
        action=action,
        trace_id=trace_id,
        outcome=outcome,
        user_email=user_email,
        external_id=external_id,
        ticket_id=ticket_id,
        details=details,
        product_group=product_group,
    )
    db.add(entry)
    await db.flush()
    return entry


async def record_event(
    db: AsyncSession,
    *,
    organization_id: str,
    platform: str,
    event_type: str,
    status: str,
    ticket_id: str | None = None,
    external_id: str | None = None,
    product_group: str | None = None,
    queue_item_id: uuid.UUID | None = None,
    trace_id: str | None = None,
    details: dict | None = None,
    retry_count: int = 0,
) -> ItsmSyncEvent:
    event = ItsmSyncEvent(
        organization_id=organization_id,
        platform=platform,
        event_type=event_type,
        status=status,
        ticket_id=ticket_id,
        external_id=external_id,
        product_group=product_group,
        queue_item_id=queue_item_id,
        trace_id=trace_id,
        details=details,
        retry_count=retry_count,
    )
    db.add(event)
    await db.flush()
    return event


async def get_retrying_event(db: AsyncSession, queue_item_id: uuid.UUID) -> ItsmSyncEvent | None:
    result = await db.execute(
        select(ItsmSyncEvent)
        .where(
            ItsmSyncEvent.queue_item_id == queue_item_id,
            ItsmSyncEvent.status == SyncEventStatus.RETRYING.value,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_history(
    db: AsyncSession, organization_id: str, platform: str, external_id: str
) -> bool:
    """True when any event or audit entry already references ``external_id``."""
    event_hit = await db.execute(
        select(ItsmSyncEvent.id)
        .where(
            ItsmSyncEvent.organization_id == organization_id,
            ItsmSyncEvent.platform == platform,
            ItsmSyncEvent.external_id == external_id,
        )
        .limit(1)
    )
    if event_hit.first() is not None:
        return True
    audit_hit = await db.execute(
        select(ItsmAuditLog.id)
        .where(
            ItsmAuditLog.organization_id == organization_id,
            ItsmAuditLog.platform == platform,
            ItsmAuditLog.external_id == external_id,
        )
        .limit(1)
    )
    return audit_hit.first() is not None


async def get_audit_logs(
    db: AsyncSession,
    organization_id: str,
    platform: str | None = None,
    trace_id: str | None = None,
    outcome: str | None = None,
    action: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ItsmAuditLog], int]:
    filters = [ItsmAuditLog.organization_id == organization_id]
    if platform:
        filters.append(ItsmAuditLog.platform == platform)
    if trace_id:
        filters.append(ItsmAuditLog.trace_id == trace_id)
    if outcome:
        filters.append(ItsmAuditLog.outcome == outcome)
    if action:
        filters.append(ItsmAuditLog.action == action)
    if since:
        filters.append(ItsmAuditLog.created_at >= since)
    if until:
        filters.append(ItsmAuditLog.created_at <= until)

    total = (await db.execute(select(func.count(ItsmAuditLog.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(ItsmAuditLog)
        .where(*filters)
        .order_by(ItsmAuditLog.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_sync_events(
    db: AsyncSession,
    organization_id: str,
    platform: str | None = None,
    status: str | None = None,
    product_group: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ItsmSyncEvent], int]:
    filters = [ItsmSyncEvent.organization_id == organization_id]
    if platform:
        filters.append(ItsmSyncEvent.platform == platform)
    if status:
        filters.append(ItsmSyncEvent.status == status)
    if product_group:
        filters.append(ItsmSyncEvent.product_group == product_group)
    if since:
        filters.append(ItsmSyncEvent.created_at >= since)
    if until:
        filters.append(ItsmSyncEvent.created_at <= until)

    total = (await db.execute(select(func.count(ItsmSyncEvent.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(ItsmSyncEvent)
        .where(*filters)
        .order_by(ItsmSyncEvent.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def _event_counts(
    db: AsyncSession, organization_id: str, platform: str, since: datetime
) -> tuple[int, int]:
    success = SyncEventStatus.SUCCESS.value
    failure = SyncEventStatus.FAILURE.value
    row = (
        await db.execute(
            select(
                func.coalesce(func.sum(case((ItsmSyncEvent.status == success, 1), else_=0)), 0),
                func.coalesce(func.sum(case((ItsmSyncEvent.status == failure, 1), else_=0)), 0),
            ).where(
                ItsmSyncEvent.organization_id == organization_id,
                ItsmSyncEvent.platform == platform,
                ItsmSyncEvent.created_at >= since,
            )
        )
    ).one()
    return int(row[0]), int(row[1])


async def health_summary(
    db: AsyncSession, organization_id: str, now: datetime | None = None
) -> list[dict]:
    """Per-platform delivery health for the integration dashboard."""
    now = now or utcnow()
    summaries = []
    for platform in Platform:
        name = platform.value
        ok_24h, failed_24h = await _event_counts(db, organization_id, name, now - timedelta(hours=24))
        ok_7d, failed_7d = await _event_counts(db, organization_id, name, now - timedelta(days=7))

        queue_length = (
            await db.execute(
                select(func.count(SyncQueueItem.id)).where(
                    SyncQueueItem.organization_id == organization_id,
                    SyncQueueItem.platform == name,
                    SyncQueueItem.status.in_(ACTIVE_STATUSES),
                )
            )
        ).scalar_one()
        failed_items = (
            await db.execute(
                select(func.count(SyncQueueItem.id)).where(
                    SyncQueueItem.organization_id == organization_id,
                    SyncQueueItem.platform == name,
                    SyncQueueItem.status == QueueStatus.FAILED.value,
                )
            )
        ).scalar_one()
        last_success = (
            await db.execute(
                select(func.max(ItsmSyncEvent.created_at)).where(
                    ItsmSyncEvent.organization_id == organization_id,
                    ItsmSyncEvent.platform == name,
                    ItsmSyncEvent.status == SyncEventStatus.SUCCESS.value,
                )
            )
        ).scalar_one_or_none()

        attempted = ok_24h + failed_24h
        summaries.append(
            {
                "platform": name,
                "success_24h": ok_24h,
                "failure_24h": failed_24h,
                "success_7d": ok_7d,
                "failure_7d": failed_7d,
                "success_rate_24h": round(ok_24h / attempted * 100, 1) if attempted else None,
                "queue_length": queue_length,
                "failed_items": failed_items,
                "last_success_at": last_success.isoformat() if last_success else None,
            }
        )
    return summaries
