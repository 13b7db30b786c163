"""Jira REST v2 adapter."""

from __future__ import annotations

import logging
import re

import httpx

from itsm_sync.adapters.base import PlatformAdapter, SendResult, response_json
from itsm_sync.core.errors import SyncError, ValidationError
from itsm_sync.models.connection import Connection

logger = logging.getLogger(__name__)

ISSUE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
PROPERTY_KEY = "itsm-sync"

# Fields Jira expects as {"name": value}
_NAMED_FIELDS = ("priority", "assignee", "issuetype")


class JiraAdapter(PlatformAdapter):
    """Issues are created in the connection's project; status moves via transitions."""

    platform = "jira"

    def _fields(self, payload: dict) -> tuple[dict, str | None]:
        fields = {}
        status = None
        for key, value in payload.items():
            if key == "status":
                status = value
            elif key in _NAMED_FIELDS and not isinstance(value, dict):
                fields[key] = {"name": value}
            else:
                fields[key] = value
        return fields, status

    async def send(
        self,
        connection: Connection,
        action: str,
        payload: dict,
        external_id: str | None = None,
    ) -> SendResult:
        options = connection.options or {}
        async with self._client(connection) as client:
            if action == "create":
                project_key = options.get("project_key")
                if not project_key:
                    raise ValidationError("Jira connection has no project_key configured")
                fields, status = self._fields(payload)
                fields["project"] = {"key": project_key}
                fields.setdefault("issuetype", {"name": options.get("issue_type", "Task")})
                resp = await self._request(
                    client, "POST", "/rest/api/2/issue", json={"fields": fields}
                )
                body = response_json(resp)
                key = body.get("key")
                if key and status:
                    # The issue exists now; a failed transition must not lose its key
                    try:
                        body["transition"] = await self._transition(client, key, status)
                    except SyncError as exc:
                        logger.warning(
                            "Created %s but could not move it to %r: %s", key, status, exc.message,
                            extra={"external_id": key},
                        )
                        body["transition_error"] = exc.message
                return SendResult(external_id=key, raw_response=body)

            if not external_id or not ISSUE_KEY_PATTERN.match(external_id):
                raise ValidationError(f"Invalid Jira issue key: {external_id}")
            issue_url = f"/rest/api/2/issue/{external_id}"

            if action == "update":
                fields, status = self._fields(payload)
                body: dict = {}
                if fields:
                    resp = await self._request(client, "PUT", issue_url, json={"fields": fields})
                    body = response_json(resp)
                if status:
                    body["transition"] = await self._transition(client, external_id, status)
                return SendResult(external_id=external_id, raw_response=body)

            if action == "comment":
                text = payload.get("comment") or payload.get("body", "")
                resp = await self._request(
                    client, "POST", f"{issue_url}/comment", json={"body": text}
                )
                return SendResult(external_id=external_id, raw_response=response_json(resp))

            if action == "sync_response":
                # Issue properties do not fire issue_updated webhooks
                resp = await self._request(
                    client, "PUT", f"{issue_url}/properties/{PROPERTY_KEY}", json=payload
                )
                return SendResult(external_id=external_id, raw_response=response_json(resp))

        raise ValidationError(f"Unsupported action: {action}")

    async def _transition(self, client: httpx.AsyncClient, key: str, status: str) -> str | None:
        """Move the issue to ``status`` if a transition leads there."""
        resp = await self._request(client, "GET", f"/rest/api/2/issue/{key}/transitions")
        wanted = str(status).strip().lower()
        for transition in response_json(resp).get("transitions", []):
            target = (transition.get("to") or {}).get("name", "")
            if wanted in (target.lower(), str(transition.get("name", "")).lower()):
                await self._request(
                    client,
                    "POST",
                    f"/rest/api/2/issue/{key}/transitions",
                    json={"transition": {"id": transition["id"]}},
                )
                return target or transition.get("name")
        logger.warning(
            "No Jira transition to %r for %s", status, key, extra={"external_id": key}
        )
        return None

    async def test_connection(self, connection: Connection) -> tuple[bool, str]:
        try:
            async with self._client(connection) as client:
                resp = await self._request(client, "GET", "/rest/api/2/myself")
        except SyncError as exc:
            return False, exc.message
        user = response_json(resp).get("displayName") or "unknown user"
        return True, f"Connection successful ({user})"
