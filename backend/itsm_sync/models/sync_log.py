"""Sync history: per-delivery events and the append-only audit trail."""
from __future__ import annotations

import enum
import uuid

from sqlalchemy import Index, Integer, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class SyncEventStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    RETRYING = "retrying"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ItsmSyncEvent(UUIDMixin, TimestampMixin, Base):
    """One observable sync occurrence. Only ``retry_count`` and ``status`` move."""

    __tablename__ = "itsm_sync_events"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    event_type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20))
    ticket_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    queue_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_itsm_sync_events_lookup", "organization_id", "platform", "external_id"),
    )


class ItsmAuditLog(UUIDMixin, TimestampMixin, Base):
    """Immutable record of a sync action and its outcome."""

    __tablename__ = "itsm_audit_logs"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    action: Mapped[str] = mapped_column(String(50))
    trace_id: Mapped[str] = mapped_column(String(64), index=True)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ticket_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_email: Mapped[str] = mapped_column(String(320))
    outcome: Mapped[str] = mapped_column(String(20))
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_group: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_itsm_audit_logs_lookup", "organization_id", "platform", "external_id"),
    )


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(ItsmAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError("Audit log entries cannot be modified")


@event.listens_for(ItsmAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError("Audit log entries cannot be deleted")
