"""Tests for inbound webhook normalization and processing."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from itsm_sync.core.errors import MalformedWebhook
from itsm_sync.models.sync_log import ItsmAuditLog, ItsmSyncEvent
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.models.ticket_link import TicketLink
from itsm_sync.services.conflict_service import update_policy
from itsm_sync.services.webhook_service import (
    normalize,
    normalize_jira,
    normalize_servicenow,
    parse_body,
    process_webhook,
)
from tests.conftest import ORG, create_connection


def snow_body(operation="insert", number="INC001", **record) -> dict:
    data = {"number": number, "sys_id": "a" * 32, "short_description": "Leaked API key"}
    data.update(record)
    return {"operation": operation, "record": data}


def jira_body(event="jira:issue_updated", key="SEC-12", fields=None, comment=None) -> dict:
    body = {
        "webhookEvent": event,
        "issue": {"key": key, "fields": fields or {"summary": "Open S3 bucket"}},
    }
    if comment is not None:
        body["comment"] = comment
    return body


async def _count(db, model) -> int:
    return (await db.execute(select(func.count(model.id)))).scalar_one()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_servicenow_insert_is_create(self):
        change = normalize_servicenow(snow_body(state="2", priority="1"))
        assert change.action == "create"
        assert change.external_id == "INC001"
        assert change.status == "2"
        assert change.priority == "1"
        assert "Leaked API key" in change.details

    def test_servicenow_reference_fields(self):
        change = normalize_servicenow(
            snow_body(operation="update", assigned_to={"value": "abc", "display_value": "Alice Chen"})
        )
        assert change.action == "update"
        assert change.assignee == "Alice Chen"

    def test_servicenow_falls_back_to_sys_id(self):
        change = normalize_servicenow({"operation": "update", "record": {"sys_id": "b" * 32}})
        assert change.external_id == "b" * 32

    def test_jira_fields(self):
        body = jira_body(
            event="jira:issue_created",
            fields={
                "summary": "Open S3 bucket",
                "status": {"name": "In Progress"},
                "priority": {"name": "Highest"},
                "assignee": {"emailAddress": "diana@example.com"},
                "labels": ["prod", "cspm"],
            },
            comment={"body": "Looking", "created": "2026-05-01T10:00:00.000+0000"},
        )
        change = normalize_jira(body)
        assert change.action == "create"
        assert change.status == "In Progress"
        assert change.priority == "Highest"
        assert change.assignee == "diana@example.com"
        assert change.category == "cspm"
        assert change.comment == "Looking"
        assert change.comment_at == datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "platform,body",
        [
            ("servicenow", {"operation": "insert"}),
            ("servicenow", {"record": {"number": "INC1"}}),
            ("servicenow", {"operation": "insert", "record": {"short_description": "x"}}),
            ("jira", {"webhookEvent": "jira:issue_updated"}),
            ("jira", {"issue": {"key": "SEC-1"}}),
            ("jira", {"webhookEvent": "jira:issue_updated", "issue": {"fields": {}}}),
            ("jira", {"webhookEvent": "jira:issue_created", "issue": {"key": "SEC-1", "fields": {"labels": 5}}}),
            ("jira", {"webhookEvent": "jira:issue_updated", "issue": {"key": "SEC-1", "fields": {"status": ["Done"]}}}),
            ("jira", {"webhookEvent": "jira:issue_updated", "issue": {"key": "SEC-1", "fields": {"priority": ["High"]}}}),
            ("jira", {"webhookEvent": "jira:issue_updated", "issue": {"key": ["SEC-1"]}}),
            ("jira", {"webhookEvent": "jira:issue_updated", "issue": {"key": "SEC-1"}, "comment": {"body": ["x"]}}),
            ("servicenow", {"operation": "update", "record": {"number": "INC1", "state": ["6"]}}),
        ],
    )
    def test_missing_fields_are_malformed(self, platform, body):
        with pytest.raises(MalformedWebhook):
            normalize(platform, body)

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b"\xff\xfe", 42])
    def test_parse_body_rejects(self, body):
        with pytest.raises(MalformedWebhook):
            parse_body(body)

    def test_parse_body_accepts_bytes(self):
        assert parse_body(json.dumps({"a": 1}).encode()) == {"a": 1}


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class TestProcessWebhook:
    async def test_insert_then_update_is_idempotent(self, db):
        """A second webhook for the same external id updates the same ticket."""
        first = await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body("insert"), acknowledge=False
        )
        assert first.success
        assert first.action == "create"
        assert not first.is_idempotent
        assert first.ticket_id.startswith("TICKET-")

        second = await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body("update"), acknowledge=False
        )
        assert second.success
        assert second.action == "update"
        assert second.is_idempotent
        assert second.ticket_id == first.ticket_id
        assert await _count(db, TicketLink) == 1

        audit = (
            await db.execute(select(ItsmAuditLog).where(ItsmAuditLog.trace_id == second.trace_id))
        ).scalar_one()
        assert audit.details.endswith("(idempotent update)")

    async def test_replayed_insert_is_classified_update(self, db):
        await process_webhook(db, organization_id=ORG, platform="servicenow", body=snow_body(), acknowledge=False)
        replay = await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body(), acknowledge=False
        )
        assert replay.action == "update"
        assert replay.is_idempotent

    async def test_one_audit_and_one_event_per_webhook(self, db):
        result = await process_webhook(
            db, organization_id=ORG, platform="jira", body=jira_body(), acknowledge=False
        )
        audits = (await db.execute(select(ItsmAuditLog))).scalars().all()
        events = (await db.execute(select(ItsmSyncEvent))).scalars().all()
        assert len(audits) == 1
        assert len(events) == 1
        assert audits[0].trace_id == events[0].trace_id == result.trace_id

    async def test_malformed_webhook_writes_nothing(self, db):
        result = await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=b"{broken", acknowledge=False
        )
        assert not result.success
        assert "Invalid JSON" in result.error
        assert await _count(db, ItsmAuditLog) == 0
        assert await _count(db, TicketLink) == 0

    async def test_wrongly_typed_jira_labels_are_rejected(self, db):
        body = {"webhookEvent": "jira:issue_created", "issue": {"key": "SEC-1", "fields": {"labels": 5}}}
        result = await process_webhook(
            db, organization_id=ORG, platform="jira", body=body, acknowledge=False
        )
        assert not result.success
        assert "labels" in result.error
        assert await _count(db, TicketLink) == 0

    async def test_backward_status_is_skipped(self, db):
        await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body(state="6"), acknowledge=False
        )
        result = await process_webhook(
            db, organization_id=ORG, platform="servicenow",
            body=snow_body("update", state="1"), acknowledge=False,
        )
        assert result.success
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.status == "resolved"
        skipped = (
            await db.execute(select(ItsmAuditLog).where(ItsmAuditLog.action == "status_transition"))
        ).scalar_one()
        assert skipped.outcome == "skipped"

    async def test_backward_status_applied_when_policy_disabled(self, db):
        await update_policy(db, ORG, {"status_forward_only": False})
        await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body(state="6"), acknowledge=False
        )
        await process_webhook(
            db, organization_id=ORG, platform="servicenow",
            body=snow_body("update", state="1"), acknowledge=False,
        )
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.status == "open"

    async def test_priority_never_downgrades(self, db):
        await process_webhook(
            db, organization_id=ORG, platform="jira",
            body=jira_body(fields={"priority": {"name": "Highest"}}), acknowledge=False,
        )
        await process_webhook(
            db, organization_id=ORG, platform="jira",
            body=jira_body(fields={"priority": {"name": "Low"}}), acknowledge=False,
        )
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.priority == "critical"

    async def test_older_comment_loses(self, db):
        await process_webhook(
            db, organization_id=ORG, platform="jira",
            body=jira_body(comment={"body": "newest", "created": "2026-05-02T10:00:00+00:00"}),
            acknowledge=False,
        )
        await process_webhook(
            db, organization_id=ORG, platform="jira",
            body=jira_body(comment={"body": "older", "created": "2026-05-01T10:00:00+00:00"}),
            acknowledge=False,
        )
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.last_comment == "newest"

    async def test_category_routes_product_group(self, db):
        result = await process_webhook(
            db, organization_id=ORG, platform="servicenow",
            body=snow_body(category="cloud"), acknowledge=False,
        )
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.product_group == "devops"
        assert result.success

    async def test_acknowledgement_queued_when_sync_enabled(self, db):
        await create_connection(db, platform="servicenow")
        result = await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body(), acknowledge=True
        )
        ack = (await db.execute(select(SyncQueueItem))).scalar_one()
        assert ack.action == "sync_response"
        assert ack.external_id == "INC001"
        assert ack.ticket_id == result.ticket_id
        assert ack.trace_id == result.trace_id

    async def test_no_acknowledgement_without_connection(self, db):
        await process_webhook(
            db, organization_id=ORG, platform="servicenow", body=snow_body(), acknowledge=True
        )
        assert await _count(db, SyncQueueItem) == 0
