"""ServiceNow Table API adapter."""

from __future__ import annotations

import logging
import re

import httpx

from itsm_sync.adapters.base import PlatformAdapter, SendResult, response_json
from itsm_sync.core.errors import SyncError, ValidationError
from itsm_sync.models.connection import Connection

logger = logging.getLogger(__name__)

TABLE_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
SYS_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

DEFAULT_TABLE = "incident"


class ServiceNowAdapter(PlatformAdapter):
    """Writes incidents through ``/api/now/table/<table>``.

    The external id of a record is its display number (INC0010001), falling
    back to the sys_id; updates accept either form.
    """

    platform = "servicenow"

    def _table(self, connection: Connection) -> str:
        table = (connection.options or {}).get("table") or DEFAULT_TABLE
        if not TABLE_PATTERN.match(table):
            raise ValidationError(f"Invalid ServiceNow table name: {table}")
        return table

    async def send(
        self,
        connection: Connection,
        action: str,
        payload: dict,
        external_id: str | None = None,
    ) -> SendResult:
        table = self._table(connection)
        async with self._client(connection) as client:
            if action == "create":
                resp = await self._request(
                    client, "POST", f"/api/now/table/{table}", json=payload
                )
                record = response_json(resp).get("result", {}) or {}
                new_id = record.get("number") or record.get("sys_id")
                return SendResult(external_id=new_id, raw_response=record)

            if not external_id:
                raise ValidationError(f"ServiceNow {action} requires an external id")
            sys_id = await self._sys_id(client, table, external_id)

            if action == "update":
                data = payload
            elif action == "comment":
                data = {"work_notes": payload.get("comment") or payload.get("body", "")}
            elif action == "sync_response":
                data = {"u_sync_status": payload.get("response", "acknowledged")}
            else:
                raise ValidationError(f"Unsupported action: {action}")

            resp = await self._request(
                client, "PATCH", f"/api/now/table/{table}/{sys_id}", json=data
            )
            record = response_json(resp).get("result", {}) or {}
            return SendResult(external_id=external_id, raw_response=record)

    async def _sys_id(self, client: httpx.AsyncClient, table: str, external_id: str) -> str:
        if SYS_ID_PATTERN.match(external_id):
            return external_id
        if not NUMBER_PATTERN.match(external_id):
            raise ValidationError(f"Invalid ServiceNow record id: {external_id}")
        resp = await self._request(
            client,
            "GET",
            f"/api/now/table/{table}",
            params={
                "sysparm_query": f"number={external_id}",
                "sysparm_fields": "sys_id",
                "sysparm_limit": "1",
            },
        )
        rows = response_json(resp).get("result", [])
        if not rows:
            raise ValidationError(f"ServiceNow record {external_id} not found in {table}")
        return rows[0]["sys_id"]

    async def test_connection(self, connection: Connection) -> tuple[bool, str]:
        """Test connectivity by fetching a small result from sys_db_object."""
        try:
            async with self._client(connection) as client:
                await self._request(
                    client,
                    "GET",
                    "/api/now/table/sys_db_object",
                    params={"sysparm_limit": "1", "sysparm_fields": "name"},
                )
        except SyncError as exc:
            return False, exc.message
        return True, "Connection successful"
