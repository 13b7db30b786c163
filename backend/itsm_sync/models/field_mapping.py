from __future__ import annotations

from sqlalchemy import Boolean, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin

FIELD_TYPES = ("string", "number", "date", "boolean", "array")


class FieldMapping(UUIDMixin, TimestampMixin, Base):
    """Field-level mapping between an internal record field and a platform field."""

    __tablename__ = "itsm_field_mappings"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    internal_field: Mapped[str] = mapped_column(String(200))
    external_field: Mapped[str] = mapped_column(String(200))
    field_type: Mapped[str] = mapped_column(String(20), default="string")
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    # Ordered [[match, replacement], ...] pairs; empty means pass-through
    transform_rule: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "platform", "internal_field", name="uq_itsm_field_mapping"
        ),
    )

    def __repr__(self) -> str:
        return f"<FieldMapping({self.platform}: {self.internal_field} -> {self.external_field})>"
