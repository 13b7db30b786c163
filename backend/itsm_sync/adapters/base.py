"""Adapter contract shared by the platform clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from itsm_sync.config import settings
from itsm_sync.core.errors import PlatformPermissionError, TransientError, classify_http_status
from itsm_sync.models.connection import Connection

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    external_id: str | None
    raw_response: dict = field(default_factory=dict)


class PlatformAdapter:
    """Delivers one queue action to an external platform.

    ``send`` either returns a SendResult or raises a SyncError subclass; the
    queue decides whether that error is retried.
    """

    platform = ""

    def __init__(self, registry, transport: httpx.AsyncBaseTransport | None = None):
        self.registry = registry
        self.transport = transport

    async def send(
        self,
        connection: Connection,
        action: str,
        payload: dict,
        external_id: str | None = None,
    ) -> SendResult:
        raise NotImplementedError

    async def test_connection(self, connection: Connection) -> tuple[bool, str]:
        raise NotImplementedError

    def _auth(self, credentials: dict) -> tuple[httpx.Auth | None, dict[str, str]]:
        headers: dict[str, str] = {"Accept": "application/json"}
        auth_type = credentials.get("auth_type", "basic")
        if auth_type == "oauth2":
            headers["Authorization"] = f"Bearer {credentials.get('access_token', '')}"
            return None, headers
        username = credentials.get("username") or credentials.get("email", "")
        password = credentials.get("password") or credentials.get("api_token", "")
        return httpx.BasicAuth(username, password), headers

    def _client(self, connection: Connection) -> httpx.AsyncClient:
        credentials = self.registry.credentials_for(connection)
        if not credentials:
            raise PlatformPermissionError(f"No credentials configured for {self.platform}")
        auth, headers = self._auth(credentials)
        return httpx.AsyncClient(
            base_url=connection.instance_url.rstrip("/"),
            auth=auth,
            headers=headers,
            timeout=settings.ADAPTER_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def _request(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs
    ) -> httpx.Response:
        """Issue a request, translating failures into the sync error taxonomy."""
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransientError(f"{self.platform} request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise classify_http_status(
                resp.status_code,
                f"{self.platform} HTTP {resp.status_code}: {resp.text[:200]}",
            )
        return resp


def response_json(resp: httpx.Response) -> dict:
    if not resp.content:
        return {}
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"result": body}
