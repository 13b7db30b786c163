from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin


class QueueAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    COMMENT = "comment"
    SYNC_RESPONSE = "sync_response"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED.value, QueueStatus.CANCELLED.value})
CANCELLABLE_STATUSES = frozenset({QueueStatus.PENDING.value, QueueStatus.FAILED.value})
ACTIVE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class SyncQueueItem(UUIDMixin, TimestampMixin, Base):
    """Durable outbound work item. Delivered in FIFO order per (platform, ticket_id)."""

    __tablename__ = "itsm_sync_queue"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    action: Mapped[str] = mapped_column(String(20))
    ticket_id: Mapped[str] = mapped_column(String(100))
    # Null until the first successful delivery, immutable afterwards
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=QueueStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)
    trace_id: Mapped[str] = mapped_column(String(64))
    product_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # Set when a worker claims the item; stale claims past the lease are released
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_itsm_sync_queue_status_retry", "status", "next_retry_at"),
        Index("ix_itsm_sync_queue_key", "platform", "ticket_id", "status"),
    )

    @property
    def key(self) -> tuple[str, str]:
        return (self.platform, self.ticket_id)

    def __repr__(self) -> str:
        return (
            f"<SyncQueueItem(id={self.id}, {self.platform}/{self.action} "
            f"ticket={self.ticket_id!r}, status={self.status!r}, "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )
