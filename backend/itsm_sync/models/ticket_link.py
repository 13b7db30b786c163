from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, TimestampMixin, UTCDateTime, UUIDMixin


class TicketLink(UUIDMixin, TimestampMixin, Base):
    """Last known state of an internal ticket and its external counterpart.

    This is the "local" side conflict resolution merges incoming changes
    against, and where update/comment deliveries find their external_id.
    """

    __tablename__ = "itsm_ticket_links"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    ticket_id: Mapped[str] = mapped_column(String(100))
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    priority: Mapped[str | None] = mapped_column(String(30), nullable=True)
    last_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_comment_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    assignee: Mapped[str | None] = mapped_column(String(200), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "platform", "ticket_id", name="uq_itsm_ticket_link_ticket"
        ),
        Index("ix_itsm_ticket_links_external", "organization_id", "platform", "external_id"),
    )
