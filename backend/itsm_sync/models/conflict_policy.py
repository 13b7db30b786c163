from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, TimestampMixin, UUIDMixin


class ConflictPolicy(UUIDMixin, TimestampMixin, Base):
    """Per-organization toggles for the field merge policies."""

    __tablename__ = "itsm_conflict_policies"

    organization_id: Mapped[str] = mapped_column(String(100), unique=True)
    comments_last_writer_wins: Mapped[bool] = mapped_column(Boolean, default=True)
    status_forward_only: Mapped[bool] = mapped_column(Boolean, default=True)
    priority_max_policy: Mapped[bool] = mapped_column(Boolean, default=True)
