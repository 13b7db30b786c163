"""Inbound webhook processing.

A payload is parsed and normalized before anything is written, so a
malformed webhook never mutates state. After that one call writes, under a
single trace id: the merged ticket link, one audit entry, one sync event
and (optionally) an acknowledgement queued back to the platform.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.config import settings
from itsm_sync.core.errors import MalformedWebhook, ValidationError
from itsm_sync.core.metrics import conflict_skips_total, webhook_events_total
from itsm_sync.models.base import utcnow
from itsm_sync.models.connection import Platform
from itsm_sync.models.sync_log import AuditOutcome, SyncEventStatus
from itsm_sync.models.sync_queue import QueueAction, QueueStatus, SyncQueueItem
from itsm_sync.models.ticket_link import TicketLink
from itsm_sync.services import audit_service
from itsm_sync.services.conflict_service import (
    get_policy,
    merge_comment,
    merge_priority,
    merge_status,
    normalize_priority,
    normalize_status,
)
from itsm_sync.services.connection_registry import ConnectionRegistry, validate_platform
from itsm_sync.services.event_bus import WEBHOOK_PROCESSED, event_bus
from itsm_sync.services.routing_service import UNKNOWN_GROUP, is_known_category, route
from itsm_sync.services.ticket_link_service import get_link_by_external_id

logger = logging.getLogger(__name__)

_PLATFORM_LABELS = {"servicenow": "ServiceNow", "jira": "Jira"}


@dataclass
class NormalizedWebhook:
    platform: str
    external_id: str
    action: str
    details: str
    status: str | None = None
    priority: str | None = None
    comment: str | None = None
    comment_at: datetime | None = None
    assignee: str | None = None
    category: str | None = None


@dataclass
class WebhookResult:
    success: bool
    ticket_id: str | None = None
    external_id: str | None = None
    action: str | None = None
    is_idempotent: bool = False
    message: str = ""
    trace_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Normalization (pure)
# ---------------------------------------------------------------------------


def parse_body(body) -> dict:
    if isinstance(body, dict):
        return body
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedWebhook("Webhook body is not valid UTF-8")
    if not isinstance(body, str):
        raise MalformedWebhook("Webhook body must be a JSON object")
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise MalformedWebhook(f"Invalid JSON: {exc}")
    if not isinstance(data, dict):
        raise MalformedWebhook("Webhook body must be a JSON object")
    return data


def _parse_timestamp(value) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value) -> str | None:
    """Plain string from a scalar or a ServiceNow ``{"value", "display_value"}`` reference."""
    if isinstance(value, dict):
        value = value.get("display_value") or value.get("value")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _name(value) -> str | None:
    """Jira objects carry their label in ``name``."""
    if isinstance(value, dict):
        return _text(value.get("name"))
    return _text(value)


_SERVICENOW_SCALAR_FIELDS = (
    "number", "sys_id", "short_description", "state", "priority", "impact",
    "work_notes", "comments", "sys_updated_on", "assigned_to", "category", "u_category",
)
_JIRA_SCALAR_FIELDS = ("summary", "status", "priority", "assignee", "updated")


def _require_scalars(obj: dict, keys: tuple[str, ...], where: str) -> None:
    for key in keys:
        if isinstance(obj.get(key), list):
            raise MalformedWebhook(f"{where} field {key} must not be a list")


def normalize_servicenow(data: dict) -> NormalizedWebhook:
    record = data.get("record")
    if not isinstance(record, dict):
        raise MalformedWebhook("Missing record object")
    _require_scalars(record, _SERVICENOW_SCALAR_FIELDS, "Record")
    operation = data.get("operation")
    if not isinstance(operation, str) or not operation.strip():
        raise MalformedWebhook("Missing operation")
    external_id = _text(record.get("number")) or _text(record.get("sys_id"))
    if not external_id:
        raise MalformedWebhook("Missing record number or sys_id")

    action = "create" if operation.strip().lower() == "insert" else "update"
    summary = _text(record.get("short_description")) or "Updated incident"
    return NormalizedWebhook(
        platform=Platform.SERVICENOW.value,
        external_id=external_id,
        action=action,
        details=f"ServiceNow {action}: {summary}",
        status=_text(record.get("state")),
        priority=_text(record.get("priority")) or _text(record.get("impact")),
        comment=_text(record.get("work_notes")) or _text(record.get("comments")),
        comment_at=_parse_timestamp(record.get("sys_updated_on")),
        assignee=_text(record.get("assigned_to")),
        category=_text(record.get("category")) or _text(record.get("u_category")),
    )


def normalize_jira(data: dict) -> NormalizedWebhook:
    issue = data.get("issue")
    if not isinstance(issue, dict):
        raise MalformedWebhook("Missing issue object")
    event = data.get("webhookEvent")
    if not isinstance(event, str) or not event.strip():
        raise MalformedWebhook("Missing webhookEvent")
    _require_scalars(issue, ("key",), "Issue")
    external_id = _text(issue.get("key"))
    if not external_id:
        raise MalformedWebhook("Missing issue key")
    fields = issue.get("fields") or {}
    if not isinstance(fields, dict):
        raise MalformedWebhook("Issue fields must be an object")
    _require_scalars(fields, _JIRA_SCALAR_FIELDS, "Issue")
    labels = fields.get("labels")
    if labels is None:
        labels = []
    elif not isinstance(labels, list):
        raise MalformedWebhook("Issue labels must be a list")
    comment = data.get("comment")
    if comment is not None and not isinstance(comment, dict):
        raise MalformedWebhook("Comment must be an object")
    _require_scalars(comment or {}, ("body", "created", "updated"), "Comment")

    action = "create" if "created" in event else "update"
    summary = _text(fields.get("summary")) or "Updated issue"

    assignee = fields.get("assignee")
    if isinstance(assignee, dict):
        assignee = assignee.get("emailAddress") or assignee.get("displayName")
    category = next(
        (label for label in labels if isinstance(label, str) and is_known_category(label)), None
    )
    comment = comment or {}
    return NormalizedWebhook(
        platform=Platform.JIRA.value,
        external_id=external_id,
        action=action,
        details=f"Jira {action}: {summary}",
        status=_name(fields.get("status")),
        priority=_name(fields.get("priority")),
        comment=_text(comment.get("body")),
        comment_at=_parse_timestamp(
            comment.get("updated") or comment.get("created") or fields.get("updated")
        ),
        assignee=_text(assignee),
        category=category,
    )


_NORMALIZERS = {
    Platform.SERVICENOW.value: normalize_servicenow,
    Platform.JIRA.value: normalize_jira,
}


def normalize(platform: str, body) -> NormalizedWebhook:
    validate_platform(platform)
    return _NORMALIZERS[platform](parse_body(body))


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


def new_ticket_id() -> str:
    return f"TICKET-{uuid.uuid4().hex[:12]}"


async def process_webhook(
    db: AsyncSession,
    *,
    organization_id: str,
    platform: str,
    body,
    acknowledge: bool | None = None,
    user_email: str | None = None,
) -> WebhookResult:
    """Apply one inbound webhook. The caller commits on success."""
    try:
        change = normalize(platform, body)
    except ValidationError as exc:
        webhook_events_total.labels(platform=platform, action="unknown", outcome="rejected").inc()
        logger.warning("Rejected %s webhook: %s", platform, exc.message, extra={"platform": platform})
        return WebhookResult(success=False, message="Webhook rejected", error=exc.message)

    trace_id = uuid.uuid4().hex
    user_email = user_email or settings.WEBHOOK_USER_EMAIL
    now = utcnow()
    log_extra = {"trace_id": trace_id, "platform": platform, "external_id": change.external_id}

    is_idempotent = await audit_service.has_history(
        db, organization_id, platform, change.external_id
    )
    action = "update" if is_idempotent else change.action

    link = await get_link_by_external_id(db, organization_id, platform, change.external_id)
    if link is None:
        link = TicketLink(
            organization_id=organization_id,
            platform=platform,
            ticket_id=new_ticket_id(),
            external_id=change.external_id,
        )
        db.add(link)
    if change.category:
        link.category = change.category
    if not link.product_group or (change.category and is_known_category(change.category)):
        link.product_group = route(link.category).product_group
    product_group = link.product_group or UNKNOWN_GROUP

    policy = await get_policy(db, organization_id)

    status = merge_status(
        link.status, normalize_status(platform, change.status), policy.status_forward_only
    )
    link.status = status.value
    if status.skipped:
        conflict_skips_total.labels(platform=platform, field="status").inc()
        await audit_service.record_audit(
            db,
            organization_id=organization_id,
            platform=platform,
            action="status_transition",
            trace_id=trace_id,
            outcome=AuditOutcome.SKIPPED.value,
            user_email=user_email,
            external_id=change.external_id,
            ticket_id=link.ticket_id,
            details=status.reason,
            product_group=product_group,
        )
        logger.info(status.reason, extra=log_extra)

    incoming_priority = normalize_priority(platform, change.priority)
    link.priority = merge_priority(link.priority, incoming_priority, policy.priority_max_policy)
    if incoming_priority and link.priority != incoming_priority:
        conflict_skips_total.labels(platform=platform, field="priority").inc()

    comment = merge_comment(
        link.last_comment,
        link.last_comment_at,
        change.comment,
        change.comment_at or now,
        policy.comments_last_writer_wins,
    )
    if change.comment is not None and not comment.replaced:
        conflict_skips_total.labels(platform=platform, field="comment").inc()
    link.last_comment = comment.text
    link.last_comment_at = comment.at

    if change.assignee:
        link.assignee = change.assignee

    details = f"{change.details} (idempotent update)" if is_idempotent else change.details
    await audit_service.record_audit(
        db,
        organization_id=organization_id,
        platform=platform,
        action=action,
        trace_id=trace_id,
        outcome=AuditOutcome.SUCCESS.value,
        user_email=user_email,
        external_id=change.external_id,
        ticket_id=link.ticket_id,
        details=details,
        product_group=product_group,
    )
    await audit_service.record_event(
        db,
        organization_id=organization_id,
        platform=platform,
        event_type="ticket_updated" if action == "update" else "ticket_created",
        status=SyncEventStatus.SUCCESS.value,
        ticket_id=link.ticket_id,
        external_id=change.external_id,
        product_group=product_group,
        trace_id=trace_id,
        details={"status": link.status, "priority": link.priority},
    )

    if acknowledge is None:
        acknowledge = settings.WEBHOOK_ACK_ENABLED
    if acknowledge:
        await _queue_acknowledgement(db, organization_id, platform, link, trace_id, user_email)

    await db.flush()
    webhook_events_total.labels(platform=platform, action=action, outcome="success").inc()
    logger.info(
        "Processed %s webhook as %s for %s", platform, action, link.ticket_id, extra=log_extra
    )
    result = WebhookResult(
        success=True,
        ticket_id=link.ticket_id,
        external_id=change.external_id,
        action=action,
        is_idempotent=is_idempotent,
        message=details,
        trace_id=trace_id,
    )
    await event_bus.publish(
        WEBHOOK_PROCESSED, result.to_dict(), platform=platform, ticket_id=link.ticket_id,
        trace_id=trace_id,
    )
    return result


async def _queue_acknowledgement(
    db: AsyncSession,
    organization_id: str,
    platform: str,
    link: TicketLink,
    trace_id: str,
    user_email: str,
) -> None:
    conn = await ConnectionRegistry(db, organization_id).get(platform)
    if conn is None or not conn.sync_enabled:
        logger.debug("No acknowledgement queued: %s sync is not enabled", platform)
        return
    db.add(
        SyncQueueItem(
            organization_id=organization_id,
            platform=platform,
            action=QueueAction.SYNC_RESPONSE.value,
            ticket_id=link.ticket_id,
            external_id=link.external_id,
            payload={"response": "acknowledged", "trace_id": trace_id},
            status=QueueStatus.PENDING.value,
            attempts=0,
            max_attempts=settings.SYNC_MAX_ATTEMPTS,
            trace_id=trace_id,
            product_group=link.product_group,
            requested_by=user_email,
        )
    )
