"""Connection records and credential resolution for platform adapters.

Adapters never read credentials themselves: they receive a registry and ask
it for the credentials of the connection they are about to call.
"""

from __future__ import annotations

import json
import logging
import os
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.core.encryption import decrypt_credentials, encrypt_credentials, is_encrypted
from itsm_sync.core.errors import ValidationError
from itsm_sync.models.base import utcnow
from itsm_sync.models.connection import DEFAULT_GROUP_SYNC, Connection, ConnectionStatus, Platform
from itsm_sync.services.routing_service import PRODUCT_GROUPS

logger = logging.getLogger(__name__)

PLATFORMS = tuple(p.value for p in Platform)

SERVICENOW_URL_PATTERN = re.compile(
    r"^https://[\w.-]+\.(service-now\.com|servicenowservices\.com)(:\d+)?(/.*)?$",
    re.IGNORECASE,
)
JIRA_URL_PATTERN = re.compile(r"^https://[\w.-]+(:\d+)?(/.*)?$", re.IGNORECASE)

_ENV_PREFIX = "env:"


def validate_platform(platform: str) -> str:
    if platform not in PLATFORMS:
        raise ValidationError(f"Unsupported platform: {platform}")
    return platform


def validate_instance_url(platform: str, instance_url: str) -> str:
    url = (instance_url or "").strip().rstrip("/")
    pattern = SERVICENOW_URL_PATTERN if platform == Platform.SERVICENOW.value else JIRA_URL_PATTERN
    if not pattern.match(url):
        raise ValidationError(f"Invalid {platform} instance URL: {instance_url}")
    return url


class ConnectionRegistry:
    """Per-organization access to connections and their credentials."""

    def __init__(self, db: AsyncSession, organization_id: str):
        self.db = db
        self.organization_id = organization_id

    async def get(self, platform: str) -> Connection | None:
        result = await self.db.execute(
            select(Connection).where(
                Connection.organization_id == self.organization_id,
                Connection.platform == platform,
            )
        )
        return result.scalar_one_or_none()

    async def list_connections(self) -> list[Connection]:
        result = await self.db.execute(
            select(Connection)
            .where(Connection.organization_id == self.organization_id)
            .order_by(Connection.platform)
        )
        return list(result.scalars().all())

    async def configure(
        self,
        platform: str,
        instance_url: str,
        *,
        credentials: dict | None = None,
        credential_ref: str | None = None,
        options: dict | None = None,
        sync_enabled: bool | None = None,
        auto_assignment_enabled: bool | None = None,
    ) -> Connection:
        """Create the platform's connection on first use, update it afterwards.

        Plain ``credentials`` are encrypted before storage; an explicit
        ``credential_ref`` must already be an ``enc:`` or ``env:`` reference.
        """
        validate_platform(platform)
        url = validate_instance_url(platform, instance_url)
        if credential_ref is not None and not (
            is_encrypted(credential_ref) or credential_ref.startswith(_ENV_PREFIX)
        ):
            raise ValidationError("credential_ref must be an enc: or env: reference")

        conn = await self.get(platform)
        if conn is None:
            conn = Connection(
                organization_id=self.organization_id,
                platform=platform,
                instance_url=url,
                sync_enabled=False,
                auto_assignment_enabled=False,
                status=ConnectionStatus.DISCONNECTED.value,
                group_sync=dict(DEFAULT_GROUP_SYNC),
                options={},
            )
            self.db.add(conn)
            logger.info("Created %s connection for %s", platform, self.organization_id)
        elif conn.instance_url != url:
            # A different instance invalidates the last connectivity result
            conn.status = ConnectionStatus.DISCONNECTED.value
        conn.instance_url = url

        if credentials:
            conn.credential_ref = encrypt_credentials(credentials)
        elif credential_ref is not None:
            conn.credential_ref = credential_ref
        if options is not None:
            conn.options = dict(options)
        if sync_enabled is not None:
            conn.sync_enabled = sync_enabled
        if auto_assignment_enabled is not None:
            conn.auto_assignment_enabled = auto_assignment_enabled
        await self.db.flush()
        return conn

    async def set_status(self, conn: Connection, status: str, error: str | None = None) -> Connection:
        conn.status = status
        conn.last_error = error
        if status == ConnectionStatus.DISCONNECTED.value:
            conn.sync_enabled = False
        await self.db.flush()
        logger.info(
            "%s connection is now %s", conn.platform, status, extra={"platform": conn.platform}
        )
        return conn

    async def set_group_sync(self, conn: Connection, product_group: str, enabled: bool) -> Connection:
        if product_group not in PRODUCT_GROUPS:
            raise ValidationError(f"Unknown product group: {product_group}")
        toggles = dict(conn.group_sync or {})
        toggles[product_group] = enabled
        # Reassign so the JSON column is flagged dirty
        conn.group_sync = toggles
        await self.db.flush()
        return conn

    async def record_test(self, conn: Connection, ok: bool, message: str) -> Connection:
        conn.last_tested_at = utcnow()
        if ok:
            conn.status = ConnectionStatus.CONNECTED.value
            conn.last_error = None
        else:
            conn.status = ConnectionStatus.ERROR.value
            conn.last_error = message
        await self.db.flush()
        return conn

    def credentials_for(self, conn: Connection) -> dict:
        """Resolve ``conn.credential_ref`` to a credential dict ({} when none)."""
        return resolve_credential_ref(conn.credential_ref)


def resolve_credential_ref(ref: str | None) -> dict:
    if not ref:
        return {}
    if ref.startswith(_ENV_PREFIX):
        raw = os.getenv(ref[len(_ENV_PREFIX) :], "")
        if not raw:
            logger.warning("Credential environment variable %s is not set", ref[len(_ENV_PREFIX) :])
            return {}
        try:
            creds = json.loads(raw)
        except ValueError:
            logger.error("Credential environment variable %s is not a JSON object", ref[len(_ENV_PREFIX) :])
            return {}
        return creds if isinstance(creds, dict) else {}
    return decrypt_credentials(ref)
