"""Per-platform connection configuration."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from itsm_sync.models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin


class Platform(str, enum.Enum):
    SERVICENOW = "servicenow"
    JIRA = "jira"


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


# Default per-product-group sync toggles for a freshly configured connection
DEFAULT_GROUP_SYNC = {"devsecops": True, "devops": True, "endpoint": False}


class Connection(UUIDMixin, TimestampMixin, Base):
    """One external ITSM instance per (organization, platform). Never hard-deleted."""

    __tablename__ = "itsm_connections"

    organization_id: Mapped[str] = mapped_column(String(100), index=True)
    platform: Mapped[str] = mapped_column(String(20))
    instance_url: Mapped[str] = mapped_column(String(500))
    # "enc:<fernet>" for stored secrets, "env:<NAME>" for secrets held in the environment
    credential_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_assignment_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.DISCONNECTED.value)
    group_sync: Mapped[dict] = mapped_column(JSONType, default=lambda: dict(DEFAULT_GROUP_SYNC))
    options: Mapped[dict] = mapped_column(JSONType, default=dict)
    last_tested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "platform", name="uq_itsm_connection_org_platform"),
    )

    def group_enabled(self, product_group: str) -> bool:
        """Per-group toggle; groups without a toggle follow ``sync_enabled``."""
        if not self.sync_enabled:
            return False
        return bool((self.group_sync or {}).get(product_group, True))

    def __repr__(self) -> str:
        return f"<Connection(platform={self.platform!r}, status={self.status!r})>"
