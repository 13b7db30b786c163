"""Durable outbound queue: enqueue, claim, deliver, retry, cancel.

Items for the same (platform, ticket_id) are delivered strictly in order and
never concurrently. No transaction is held open across an adapter call: the
item is claimed and committed, the adapter runs, and the outcome is recorded
in a fresh transaction.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from itsm_sync.adapters.base import SendResult
from itsm_sync.adapters.factory import build_adapter
from itsm_sync.config import settings
from itsm_sync.core.errors import QueueStateError, SyncError, TransientError, ValidationError
from itsm_sync.core.metrics import (
    sync_deliveries_total,
    sync_delivery_duration_seconds,
    sync_identity_conflicts_total,
    sync_queue_claims_total,
)
from itsm_sync.models.base import utcnow
from itsm_sync.models.sync_log import AuditOutcome, SyncEventStatus
from itsm_sync.models.sync_queue import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    QueueAction,
    QueueStatus,
    SyncQueueItem,
)
from itsm_sync.services import audit_service
from itsm_sync.services.conflict_service import normalize_priority, normalize_status
from itsm_sync.services.connection_registry import ConnectionRegistry, validate_platform
from itsm_sync.services.event_bus import (
    QUEUE_CANCELLED,
    QUEUE_COMPLETED,
    QUEUE_ENQUEUED,
    QUEUE_FAILED,
    QUEUE_REQUEUED,
    QUEUE_RETRYING,
    event_bus,
)
from itsm_sync.services.field_mapping_service import FieldMappingService, resolve
from itsm_sync.services.routing_service import UNASSIGNED, route
from itsm_sync.services.ticket_link_service import (
    get_link,
    get_link_by_external_id,
    get_or_create_link,
)

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = (5, 30, 300)

EVENT_TYPES = {
    QueueAction.CREATE.value: "ticket_created",
    QueueAction.UPDATE.value: "ticket_updated",
    QueueAction.COMMENT.value: "comment_added",
    QueueAction.SYNC_RESPONSE.value: "sync_response",
}

_RECORD_ACTIONS = (QueueAction.CREATE.value, QueueAction.UPDATE.value)


def backoff(attempts: int) -> timedelta:
    """Delay before the next try, given the number of failed attempts so far."""
    index = min(max(attempts - 1, 0), len(BACKOFF_SECONDS) - 1)
    return timedelta(seconds=BACKOFF_SECONDS[index])


def new_trace_id() -> str:
    return uuid.uuid4().hex


def _log_extra(item: SyncQueueItem) -> dict:
    return {
        "trace_id": item.trace_id,
        "platform": item.platform,
        "ticket_id": item.ticket_id,
        "queue_item_id": str(item.id),
    }


def _event(item: SyncQueueItem) -> dict:
    return {
        "id": str(item.id),
        "action": item.action,
        "status": item.status,
        "attempts": item.attempts,
        "external_id": item.external_id,
        "error_message": item.error_message,
    }


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


async def enqueue(
    db: AsyncSession,
    *,
    organization_id: str,
    platform: str,
    action: str,
    ticket_id: str,
    record: dict | None = None,
    payload: dict | None = None,
    external_id: str | None = None,
    product_group: str | None = None,
    trace_id: str | None = None,
    user_email: str | None = None,
) -> SyncQueueItem | None:
    """Queue one outbound action.

    ``create``/``update`` take the internal ``record`` and resolve it through
    the field mappings here, so a missing required field fails the call and
    nothing is queued. ``comment``/``sync_response`` take a ready ``payload``.
    Returns None (with a skipped audit entry) when sync is off for the
    platform or the record's product group.
    """
    validate_platform(platform)
    if action not in EVENT_TYPES:
        raise ValidationError(f"Unsupported action: {action}")
    if not ticket_id:
        raise ValidationError("ticket_id is required")

    registry = ConnectionRegistry(db, organization_id)
    conn = await registry.get(platform)
    if conn is None:
        raise ValidationError(f"No {platform} connection configured")

    trace_id = trace_id or new_trace_id()
    user_email = user_email or settings.SYNC_USER_EMAIL
    link = await get_link(db, organization_id, platform, ticket_id)

    assignee = None
    if action in _RECORD_ACTIONS:
        if not isinstance(record, dict):
            raise ValidationError(f"{action} requires a record")
        target = route(record.get("category"))
        product_group = target.product_group
        if conn.auto_assignment_enabled and not record.get("assignee") and target.assignee != UNASSIGNED:
            record = {**record, "assignee": target.assignee}
        assignee = record.get("assignee")
    else:
        if not isinstance(payload, dict):
            raise ValidationError(f"{action} requires a payload")
        product_group = product_group or (link.product_group if link else None)

    if not conn.sync_enabled or (product_group and not conn.group_enabled(product_group)):
        reason = "sync disabled" if not conn.sync_enabled else f"{product_group} sync disabled"
        await audit_service.record_audit(
            db,
            organization_id=organization_id,
            platform=platform,
            action="enqueue",
            trace_id=trace_id,
            outcome=AuditOutcome.SKIPPED.value,
            user_email=user_email,
            external_id=external_id,
            ticket_id=ticket_id,
            details=f"{action} not queued: {reason}",
            product_group=product_group,
        )
        logger.info(
            "Skipped %s %s for %s: %s", platform, action, ticket_id, reason,
            extra={"trace_id": trace_id, "platform": platform, "ticket_id": ticket_id},
        )
        return None

    if action in _RECORD_ACTIONS:
        mappings = await FieldMappingService(db, organization_id).effective_mappings(platform)
        payload = resolve(platform, record, mappings)

    item = SyncQueueItem(
        organization_id=organization_id,
        platform=platform,
        action=action,
        ticket_id=ticket_id,
        external_id=external_id,
        payload=payload,
        status=QueueStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        trace_id=trace_id,
        product_group=product_group,
        requested_by=user_email,
    )
    db.add(item)

    # Mirror the local side so inbound changes can be merged against it
    if action in _RECORD_ACTIONS or action == QueueAction.COMMENT.value:
        link = link or await get_or_create_link(db, organization_id, platform, ticket_id)
        if action in _RECORD_ACTIONS:
            link.status = normalize_status(None, record.get("status")) or link.status
            link.priority = normalize_priority(None, record.get("severity")) or link.priority
            link.category = record.get("category") or link.category
            link.product_group = product_group
            link.assignee = assignee or link.assignee
        else:
            link.last_comment = payload.get("comment") or payload.get("body")
            link.last_comment_at = utcnow()
        if external_id and not link.external_id:
            link.external_id = external_id

    await db.flush()
    logger.info("Enqueued %s %s for %s", platform, action, ticket_id, extra=_log_extra(item))
    await event_bus.publish(
        QUEUE_ENQUEUED, _event(item), platform=platform, ticket_id=ticket_id, trace_id=trace_id
    )
    return item


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_item(db: AsyncSession, organization_id: str, item_id: uuid.UUID) -> SyncQueueItem | None:
    result = await db.execute(
        select(SyncQueueItem).where(
            SyncQueueItem.id == item_id, SyncQueueItem.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def list_items(
    db: AsyncSession,
    organization_id: str,
    platform: str | None = None,
    status: str | None = None,
    ticket_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[SyncQueueItem], int]:
    filters = [SyncQueueItem.organization_id == organization_id]
    if platform:
        filters.append(SyncQueueItem.platform == platform)
    if status:
        filters.append(SyncQueueItem.status == status)
    if ticket_id:
        filters.append(SyncQueueItem.ticket_id == ticket_id)
    total = (await db.execute(select(func.count(SyncQueueItem.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(SyncQueueItem)
        .where(*filters)
        .order_by(SyncQueueItem.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def status_counts(db: AsyncSession, organization_id: str, platform: str | None = None) -> dict:
    q = select(SyncQueueItem.status, func.count(SyncQueueItem.id)).where(
        SyncQueueItem.organization_id == organization_id
    )
    if platform:
        q = q.where(SyncQueueItem.platform == platform)
    rows = (await db.execute(q.group_by(SyncQueueItem.status))).all()
    counts = {s.value: 0 for s in QueueStatus}
    counts.update({status: count for status, count in rows})
    return counts


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------


async def claim(db: AsyncSession, item: SyncQueueItem) -> bool:
    """Compare-and-set pending -> processing.

    Fails (returns False) if the item is no longer pending or another item of
    the same key is already processing. The caller commits.
    """
    other = aliased(SyncQueueItem)
    key_busy = exists(
        select(other.id).where(
            other.platform == item.platform,
            other.ticket_id == item.ticket_id,
            other.status == QueueStatus.PROCESSING.value,
            other.id != item.id,
        )
    )
    result = await db.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item.id,
            SyncQueueItem.status == QueueStatus.PENDING.value,
            ~key_busy,
        )
        .values(
            status=QueueStatus.PROCESSING.value,
            next_retry_at=None,
            claimed_at=utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    sync_queue_claims_total.labels(result="claimed" if claimed else "lost").inc()
    if claimed:
        await db.refresh(item)
    return claimed


async def claim_due(
    db: AsyncSession,
    now: datetime | None = None,
    limit: int | None = None,
    exclude_keys: set[tuple[str, str]] | frozenset = frozenset(),
) -> list[SyncQueueItem]:
    """Claim the due head item of each (platform, ticket_id) key.

    A key's head is its oldest pending-or-processing item; later items of the
    same key wait until it is done. The caller commits.
    """
    now = now or utcnow()
    limit = limit or settings.SYNC_BATCH_SIZE
    older = aliased(SyncQueueItem)
    has_older_active = exists(
        select(older.id).where(
            older.platform == SyncQueueItem.platform,
            older.ticket_id == SyncQueueItem.ticket_id,
            older.status.in_(ACTIVE_STATUSES),
            or_(
                older.created_at < SyncQueueItem.created_at,
                and_(older.created_at == SyncQueueItem.created_at, older.id < SyncQueueItem.id),
            ),
        )
    )
    result = await db.execute(
        select(SyncQueueItem)
        .where(
            SyncQueueItem.status == QueueStatus.PENDING.value,
            or_(SyncQueueItem.next_retry_at.is_(None), SyncQueueItem.next_retry_at <= now),
            ~has_older_active,
        )
        .order_by(SyncQueueItem.created_at, SyncQueueItem.id)
        .limit(limit)
    )
    claimed = []
    for item in result.scalars().all():
        if item.key in exclude_keys:
            continue
        if await claim(db, item):
            claimed.append(item)
    return claimed


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def process_item(
    db: AsyncSession,
    item: SyncQueueItem,
    adapter_factory=build_adapter,
    now: datetime | None = None,
) -> SyncQueueItem:
    """Deliver a claimed (processing) item and record the outcome."""
    if item.status != QueueStatus.PROCESSING.value:
        raise QueueStateError(f"Item {item.id} is {item.status}, not processing")

    registry = ConnectionRegistry(db, item.organization_id)
    try:
        conn = await registry.get(item.platform)
        if conn is None:
            raise ValidationError(f"No {item.platform} connection configured")
        if not conn.sync_enabled:
            raise ValidationError(f"{item.platform} sync is disabled")

        action = item.action
        external_id = item.external_id
        if external_id is None:
            link = await get_link(db, item.organization_id, item.platform, item.ticket_id)
            external_id = link.external_id if link else None
        if action == QueueAction.CREATE.value and external_id:
            # Already created on the platform; deliver the record as an update
            action = QueueAction.UPDATE.value
        if action != QueueAction.CREATE.value and not external_id:
            raise ValidationError(f"Ticket {item.ticket_id} has no linked {item.platform} id")
        adapter = adapter_factory(item.platform, registry)
    except SyncError as exc:
        return await _record_failure(db, item, exc, now)

    # Release the read transaction before the network call
    await db.commit()

    started = time.perf_counter()
    try:
        result = await adapter.send(conn, action, dict(item.payload or {}), external_id=external_id)
    except SyncError as exc:
        error = exc
    except Exception as exc:
        logger.exception("Unexpected adapter error", extra=_log_extra(item))
        error = TransientError(f"Unexpected adapter error: {exc}")
    else:
        error = None
    finally:
        sync_delivery_duration_seconds.labels(platform=item.platform).observe(
            time.perf_counter() - started
        )

    if error is not None:
        return await _record_failure(db, item, error, now)
    return await _record_success(db, item, result, external_id, now)


async def _record_success(
    db: AsyncSession,
    item: SyncQueueItem,
    result: SendResult,
    known_external_id: str | None,
    now: datetime | None,
) -> SyncQueueItem:
    now = now or utcnow()
    delivered_id = result.external_id or known_external_id
    if item.external_id is None and delivered_id:
        item.external_id = delivered_id
    item.status = QueueStatus.COMPLETED.value
    item.completed_at = now
    item.claimed_at = None
    item.next_retry_at = None
    item.error_message = None
    item.error_kind = None

    user_email = item.requested_by or settings.SYNC_USER_EMAIL
    if delivered_id:
        owner = await get_link_by_external_id(db, item.organization_id, item.platform, delivered_id)
        if owner is not None and owner.ticket_id != item.ticket_id:
            sync_identity_conflicts_total.labels(platform=item.platform).inc()
            logger.warning(
                "External id %s already linked to %s", delivered_id, owner.ticket_id,
                extra=_log_extra(item),
            )
            await audit_service.record_audit(
                db,
                organization_id=item.organization_id,
                platform=item.platform,
                action="identity_conflict",
                trace_id=item.trace_id,
                outcome=AuditOutcome.SKIPPED.value,
                user_email=user_email,
                external_id=delivered_id,
                ticket_id=item.ticket_id,
                details=f"{delivered_id} is already linked to {owner.ticket_id}",
                product_group=item.product_group,
            )
    link = await get_or_create_link(db, item.organization_id, item.platform, item.ticket_id)
    if link.external_id is None and delivered_id:
        link.external_id = delivered_id
    if item.product_group and not link.product_group:
        link.product_group = item.product_group
    if (result.raw_response or {}).get("transition_error") and (item.payload or {}).get("status"):
        _queue_status_followup(db, item, delivered_id)

    await audit_service.record_audit(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        action=item.action,
        trace_id=item.trace_id,
        outcome=AuditOutcome.SUCCESS.value,
        user_email=user_email,
        external_id=item.external_id,
        ticket_id=item.ticket_id,
        details=f"{item.platform} {item.action} delivered",
        product_group=item.product_group,
    )
    await audit_service.record_event(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        event_type=EVENT_TYPES[item.action],
        status=SyncEventStatus.SUCCESS.value,
        ticket_id=item.ticket_id,
        external_id=item.external_id,
        product_group=item.product_group,
        queue_item_id=item.id,
        trace_id=item.trace_id,
        retry_count=item.attempts,
    )
    await db.commit()

    sync_deliveries_total.labels(platform=item.platform, action=item.action, outcome="success").inc()
    logger.info("Delivered %s %s", item.platform, item.action, extra=_log_extra(item))
    await event_bus.publish(
        QUEUE_COMPLETED, _event(item), platform=item.platform, ticket_id=item.ticket_id,
        trace_id=item.trace_id,
    )
    return item


def _queue_status_followup(db: AsyncSession, item: SyncQueueItem, external_id: str) -> SyncQueueItem:
    """Queue an update that re-applies a status the create could not set."""
    followup = SyncQueueItem(
        organization_id=item.organization_id,
        platform=item.platform,
        action=QueueAction.UPDATE.value,
        ticket_id=item.ticket_id,
        external_id=external_id,
        payload={"status": item.payload["status"]},
        status=QueueStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        trace_id=item.trace_id,
        product_group=item.product_group,
        requested_by=item.requested_by,
    )
    db.add(followup)
    logger.info(
        "Queued status follow-up for %s", external_id, extra=_log_extra(item)
    )
    return followup


async def _record_failure(
    db: AsyncSession, item: SyncQueueItem, error: SyncError, now: datetime | None
) -> SyncQueueItem:
    now = now or utcnow()
    item.attempts += 1
    item.claimed_at = None
    item.error_message = error.message
    item.error_kind = error.kind

    if error.retryable and item.attempts < item.max_attempts:
        item.status = QueueStatus.PENDING.value
        item.next_retry_at = now + backoff(item.attempts)
        event = await audit_service.get_retrying_event(db, item.id)
        if event is None:
            await audit_service.record_event(
                db,
                organization_id=item.organization_id,
                platform=item.platform,
                event_type=EVENT_TYPES[item.action],
                status=SyncEventStatus.RETRYING.value,
                ticket_id=item.ticket_id,
                external_id=item.external_id,
                product_group=item.product_group,
                queue_item_id=item.id,
                trace_id=item.trace_id,
                details={"error": error.message, "kind": error.kind},
                retry_count=item.attempts,
            )
        else:
            event.retry_count = item.attempts
            event.details = {"error": error.message, "kind": error.kind}
        await db.commit()
        sync_deliveries_total.labels(platform=item.platform, action=item.action, outcome="retry").inc()
        logger.warning(
            "Delivery failed (%s), retry %d/%d at %s", error.message, item.attempts,
            item.max_attempts, item.next_retry_at.isoformat(), extra=_log_extra(item),
        )
        await event_bus.publish(
            QUEUE_RETRYING, _event(item), platform=item.platform, ticket_id=item.ticket_id,
            trace_id=item.trace_id,
        )
        return item

    item.status = QueueStatus.FAILED.value
    item.next_retry_at = None
    await audit_service.record_audit(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        action=item.action,
        trace_id=item.trace_id,
        outcome=AuditOutcome.FAILURE.value,
        user_email=item.requested_by or settings.SYNC_USER_EMAIL,
        external_id=item.external_id,
        ticket_id=item.ticket_id,
        details=f"{error.kind}: {error.message}",
        product_group=item.product_group,
    )
    await audit_service.record_event(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        event_type=EVENT_TYPES[item.action],
        status=SyncEventStatus.FAILURE.value,
        ticket_id=item.ticket_id,
        external_id=item.external_id,
        product_group=item.product_group,
        queue_item_id=item.id,
        trace_id=item.trace_id,
        details={"error": error.message, "kind": error.kind},
        retry_count=item.attempts,
    )
    await db.commit()
    sync_deliveries_total.labels(platform=item.platform, action=item.action, outcome="failure").inc()
    logger.error("Delivery failed permanently: %s", error.message, extra=_log_extra(item))
    await event_bus.publish(
        QUEUE_FAILED, _event(item), platform=item.platform, ticket_id=item.ticket_id,
        trace_id=item.trace_id,
    )
    return item


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


async def cancel(db: AsyncSession, item: SyncQueueItem, user_email: str) -> SyncQueueItem:
    if item.status not in CANCELLABLE_STATUSES:
        raise QueueStateError(f"Cannot cancel an item that is {item.status}")
    item.status = QueueStatus.CANCELLED.value
    item.next_retry_at = None
    await audit_service.record_audit(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        action="cancel",
        trace_id=item.trace_id,
        outcome=AuditOutcome.SUCCESS.value,
        user_email=user_email,
        external_id=item.external_id,
        ticket_id=item.ticket_id,
        details=f"{item.action} cancelled after {item.attempts} attempt(s)",
        product_group=item.product_group,
    )
    await db.flush()
    await event_bus.publish(
        QUEUE_CANCELLED, _event(item), platform=item.platform, ticket_id=item.ticket_id,
        trace_id=item.trace_id,
    )
    return item


async def retry(db: AsyncSession, item: SyncQueueItem, user_email: str) -> SyncQueueItem:
    """Put a failed item back in the queue for one more attempt.

    Attempts keep accumulating; the item gets exactly one more delivery attempt.
    """
    if item.status != QueueStatus.FAILED.value:
        raise QueueStateError(f"Only failed items can be retried (item is {item.status})")
    item.status = QueueStatus.PENDING.value
    item.next_retry_at = None
    item.error_message = None
    item.error_kind = None
    item.max_attempts = item.attempts + 1
    await audit_service.record_audit(
        db,
        organization_id=item.organization_id,
        platform=item.platform,
        action="retry",
        trace_id=item.trace_id,
        outcome=AuditOutcome.SUCCESS.value,
        user_email=user_email,
        external_id=item.external_id,
        ticket_id=item.ticket_id,
        details=f"Manual retry of {item.action} (attempt {item.attempts + 1}/{item.max_attempts})",
        product_group=item.product_group,
    )
    await db.flush()
    await event_bus.publish(
        QUEUE_REQUEUED, _event(item), platform=item.platform, ticket_id=item.ticket_id,
        trace_id=item.trace_id,
    )
    return item


async def retry_all(
    db: AsyncSession, organization_id: str, platform: str | None, user_email: str
) -> list[SyncQueueItem]:
    q = select(SyncQueueItem).where(
        SyncQueueItem.organization_id == organization_id,
        SyncQueueItem.status == QueueStatus.FAILED.value,
    )
    if platform:
        q = q.where(SyncQueueItem.platform == platform)
    items = list((await db.execute(q.order_by(SyncQueueItem.created_at))).scalars().all())
    for item in items:
        await retry(db, item, user_email)
    logger.info("Re-queued %d failed items (%s)", len(items), platform or "all platforms")
    return items


async def release_claims(
    db: AsyncSession,
    item_ids: list[uuid.UUID] | None = None,
    lease_seconds: int | None = None,
) -> int:
    """Return processing items to pending.

    With ids, releases exactly those claims (a crashed delivery in this
    process). Without ids, releases only claims older than the lease, so a
    starting process never takes back items another live worker is delivering.
    Claims with no ``claimed_at`` count as expired.
    """
    stmt = update(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.PROCESSING.value)
    if item_ids is not None:
        stmt = stmt.where(SyncQueueItem.id.in_(item_ids))
    else:
        lease = settings.SYNC_CLAIM_LEASE_SECONDS if lease_seconds is None else lease_seconds
        expired_before = utcnow() - timedelta(seconds=lease)
        stmt = stmt.where(
            or_(SyncQueueItem.claimed_at.is_(None), SyncQueueItem.claimed_at < expired_before)
        )
    result = await db.execute(
        stmt.values(
            status=QueueStatus.PENDING.value, claimed_at=None, updated_at=utcnow()
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
