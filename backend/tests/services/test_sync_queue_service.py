"""Tests for the outbound queue: enqueue, claim ordering, delivery outcomes,
retry/backoff and operator actions."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from itsm_sync.adapters.base import SendResult
from itsm_sync.adapters.factory import build_adapter
from itsm_sync.config import settings
from itsm_sync.core.errors import (
    MissingRequiredField,
    PlatformPermissionError,
    QueueStateError,
    TransientError,
    ValidationError,
)
from itsm_sync.models.base import utcnow
from itsm_sync.models.sync_log import ItsmAuditLog, ItsmSyncEvent
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.models.ticket_link import TicketLink
from itsm_sync.services import sync_queue_service as queue
from tests.conftest import (
    ORG,
    ScriptedAdapter,
    create_connection,
    create_queue_item,
    finding,
)

NOW = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


async def _audit(db, **filters) -> list[ItsmAuditLog]:
    q = select(ItsmAuditLog)
    for key, value in filters.items():
        q = q.where(getattr(ItsmAuditLog, key) == value)
    return list((await db.execute(q)).scalars().all())


async def _events(db, **filters) -> list[ItsmSyncEvent]:
    q = select(ItsmSyncEvent)
    for key, value in filters.items():
        q = q.where(getattr(ItsmSyncEvent, key) == value)
    return list((await db.execute(q)).scalars().all())


async def _claim_one(db, now=NOW) -> SyncQueueItem:
    items = await queue.claim_due(db, now=now)
    await db.commit()
    assert len(items) == 1
    return items[0]


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    @pytest.mark.parametrize(
        "attempts,seconds", [(0, 5), (1, 5), (2, 30), (3, 300), (10, 300)]
    )
    def test_table(self, attempts, seconds):
        assert queue.backoff(attempts) == timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    async def test_create_resolves_payload_and_routes(self, db):
        await create_connection(db, platform="servicenow")
        item = await queue.enqueue(
            db, organization_id=ORG, platform="servicenow", action="create",
            ticket_id="T1", record=finding(),
        )
        assert item.status == "pending"
        assert item.attempts == 0
        assert item.max_attempts == 3
        assert item.product_group == "devsecops"
        assert item.payload["short_description"] == "SQL injection in login form"
        assert item.payload["impact"] == "2"
        assert len(item.trace_id) == 32

    async def test_missing_required_field_enqueues_nothing(self, db):
        await create_connection(db, platform="servicenow")
        record = finding()
        del record["reference_id"]
        with pytest.raises(MissingRequiredField):
            await queue.enqueue(
                db, organization_id=ORG, platform="servicenow", action="create",
                ticket_id="T1", record=record,
            )
        items, total = await queue.list_items(db, ORG)
        assert total == 0

    async def test_auto_assignment_fills_assignee(self, db):
        await create_connection(db, platform="servicenow", auto_assignment_enabled=True)
        item = await queue.enqueue(
            db, organization_id=ORG, platform="servicenow", action="create",
            ticket_id="T1", record=finding(category="DAST"),
        )
        assert item.payload["assigned_to"] == "Bob Kumar"

    async def test_auto_assignment_keeps_explicit_assignee(self, db):
        await create_connection(db, platform="servicenow", auto_assignment_enabled=True)
        item = await queue.enqueue(
            db, organization_id=ORG, platform="servicenow", action="create",
            ticket_id="T1", record=finding(assignee="Zoe"),
        )
        assert item.payload["assigned_to"] == "Zoe"

    async def test_sync_disabled_skips_with_audit(self, db):
        await create_connection(db, platform="servicenow", sync_enabled=False)
        item = await queue.enqueue(
            db, organization_id=ORG, platform="servicenow", action="create",
            ticket_id="T1", record=finding(),
        )
        assert item is None
        skipped = await _audit(db, outcome="skipped")
        assert len(skipped) == 1
        assert "sync disabled" in skipped[0].details

    async def test_disabled_product_group_skips(self, db):
        # endpoint sync is off by default
        await create_connection(db, platform="servicenow")
        item = await queue.enqueue(
            db, organization_id=ORG, platform="servicenow", action="create",
            ticket_id="T1", record=finding(category="edr"),
        )
        assert item is None

    async def test_no_connection_rejected(self, db):
        with pytest.raises(ValidationError):
            await queue.enqueue(
                db, organization_id=ORG, platform="jira", action="create",
                ticket_id="T1", record=finding(),
            )

    async def test_comment_takes_payload(self, db):
        await create_connection(db, platform="jira")
        item = await queue.enqueue(
            db, organization_id=ORG, platform="jira", action="comment",
            ticket_id="T1", payload={"comment": "Patched in 2.4.1"},
        )
        assert item.payload == {"comment": "Patched in 2.4.1"}
        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.last_comment == "Patched in 2.4.1"


# ---------------------------------------------------------------------------
# Claiming and ordering
# ---------------------------------------------------------------------------


class TestClaim:
    async def test_claim_is_compare_and_set(self, db):
        item = await create_queue_item(db)
        assert await queue.claim(db, item)
        assert item.status == "processing"
        assert not await queue.claim(db, item)

    async def test_only_head_of_key_is_claimed(self, db):
        first = await create_queue_item(db, ticket_id="T1", created_at=NOW - timedelta(seconds=2))
        await create_queue_item(db, ticket_id="T1", created_at=NOW - timedelta(seconds=1))
        other = await create_queue_item(db, ticket_id="T2", created_at=NOW - timedelta(seconds=1))
        await db.commit()

        claimed = await queue.claim_due(db, now=NOW)
        assert {i.id for i in claimed} == {first.id, other.id}

    async def test_later_item_waits_for_processing_head(self, db):
        await create_queue_item(db, ticket_id="T1", status="processing", created_at=NOW - timedelta(seconds=2))
        await create_queue_item(db, ticket_id="T1", created_at=NOW - timedelta(seconds=1))
        await db.commit()
        assert await queue.claim_due(db, now=NOW) == []

    async def test_item_waiting_for_backoff_blocks_its_key(self, db):
        await create_queue_item(
            db, ticket_id="T1", next_retry_at=NOW + timedelta(seconds=30),
            created_at=NOW - timedelta(seconds=2),
        )
        await create_queue_item(db, ticket_id="T1", created_at=NOW - timedelta(seconds=1))
        await db.commit()
        assert await queue.claim_due(db, now=NOW) == []

    async def test_exclude_keys(self, db):
        await create_queue_item(db, platform="jira", ticket_id="T1")
        await db.commit()
        assert await queue.claim_due(db, now=NOW, exclude_keys={("jira", "T1")}) == []

    async def test_release_claims(self, db):
        await create_queue_item(db, status="processing")
        await db.commit()
        assert await queue.release_claims(db) == 1
        await db.commit()
        assert len(await queue.claim_due(db, now=NOW)) == 1

    async def test_claim_records_claimed_at(self, db):
        item = await create_queue_item(db)
        await db.commit()
        assert await queue.claim(db, item)
        assert item.claimed_at is not None

    async def test_live_claim_survives_release(self, db):
        """A claim inside its lease is not handed back to pending."""
        item = await create_queue_item(db)
        await db.commit()
        assert [i.id for i in await queue.claim_due(db, now=NOW)] == [item.id]
        await db.commit()

        assert await queue.release_claims(db) == 0
        await db.commit()
        await db.refresh(item)
        assert item.status == "processing"
        assert await queue.claim(db, item) is False

    async def test_expired_claim_is_released(self, db):
        expired = utcnow() - timedelta(seconds=settings.SYNC_CLAIM_LEASE_SECONDS + 60)
        stale = await create_queue_item(db, ticket_id="T1", status="processing", claimed_at=expired)
        live = await create_queue_item(
            db, ticket_id="T2", status="processing", claimed_at=utcnow()
        )
        await db.commit()

        assert await queue.release_claims(db) == 1
        await db.commit()
        await db.refresh(stale)
        await db.refresh(live)
        assert stale.status == "pending"
        assert stale.claimed_at is None
        assert live.status == "processing"

    async def test_release_by_id_ignores_lease(self, db):
        item = await create_queue_item(db, status="processing", claimed_at=utcnow())
        await db.commit()
        assert await queue.release_claims(db, [item.id]) == 1


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestProcessItem:
    async def test_jira_create_retries_after_429_then_succeeds(self, db):
        """A rate-limited create is retried after 5s and completes on the second try."""
        await create_connection(db, platform="jira")
        await queue.enqueue(
            db, organization_id=ORG, platform="jira", action="create",
            ticket_id="T1", record=finding(),
        )
        await db.commit()

        responses = iter([httpx.Response(429, text="slow down"), httpx.Response(201, json={"key": "SEC-900"})])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/transitions"):
                return httpx.Response(200, json={"transitions": []})
            seen.append(json.loads(request.content))
            return next(responses)

        def factory(platform, registry):
            return build_adapter(platform, registry, transport=httpx.MockTransport(handler))

        item = await _claim_one(db)
        await queue.process_item(db, item, factory, now=NOW)
        assert item.status == "pending"
        assert item.attempts == 1
        assert item.error_kind == "transient"
        assert item.next_retry_at == NOW + timedelta(seconds=5)

        assert await queue.claim_due(db, now=NOW + timedelta(seconds=4)) == []
        item = await _claim_one(db, now=NOW + timedelta(seconds=5))
        await queue.process_item(db, item, factory, now=NOW + timedelta(seconds=5))

        assert item.status == "completed"
        assert item.external_id == "SEC-900"
        assert seen[0]["fields"]["project"] == {"key": "SEC"}
        assert seen[0]["fields"]["priority"] == {"name": "High"}

        audits = await _audit(db, outcome="success")
        assert len(audits) == 1
        assert audits[0].external_id == "SEC-900"
        successes = await _events(db, status="success")
        assert len(successes) == 1
        assert successes[0].retry_count == 1
        assert successes[0].event_type == "ticket_created"

        link = (await db.execute(select(TicketLink))).scalar_one()
        assert link.external_id == "SEC-900"

    async def test_jira_create_survives_failed_transition(self, db):
        """The issue key is kept and the status is re-applied by a follow-up update."""
        await create_connection(db, platform="jira")
        await queue.enqueue(
            db, organization_id=ORG, platform="jira", action="create",
            ticket_id="T1", record=finding(),
        )
        await db.commit()

        transitions_up = False
        created = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/transitions"):
                if not transitions_up:
                    return httpx.Response(503, text="busy")
                if request.method == "GET":
                    return httpx.Response(
                        200, json={"transitions": [{"id": "11", "name": "Open", "to": {"name": "Open"}}]}
                    )
                return httpx.Response(204)
            if request.method == "POST" and request.url.path == "/rest/api/2/issue":
                created.append(request)
                return httpx.Response(201, json={"key": "SEC-901"})
            return httpx.Response(204)

        def factory(platform, registry):
            return build_adapter(platform, registry, transport=httpx.MockTransport(handler))

        item = await _claim_one(db)
        await queue.process_item(db, item, factory, now=NOW)
        assert item.status == "completed"
        assert item.external_id == "SEC-901"
        assert len(created) == 1

        followup = await _claim_one(db)
        assert followup.action == "update"
        assert followup.external_id == "SEC-901"
        assert followup.payload == {"status": item.payload["status"]}

        transitions_up = True
        await queue.process_item(db, followup, factory, now=NOW)
        assert followup.status == "completed"
        assert len(created) == 1

    async def test_transient_failures_exhaust_attempts(self, db):
        await create_connection(db, platform="servicenow")
        await create_queue_item(db, external_id="INC0001")
        await db.commit()
        adapter = ScriptedAdapter(*(TransientError("HTTP 503") for _ in range(3)))

        now = NOW
        for expected_delay in (5, 30):
            item = await _claim_one(db, now=now)
            await queue.process_item(db, item, adapter.factory, now=now)
            assert item.status == "pending"
            assert item.next_retry_at == now + timedelta(seconds=expected_delay)
            now = item.next_retry_at

        item = await _claim_one(db, now=now)
        await queue.process_item(db, item, adapter.factory, now=now)
        assert item.status == "failed"
        assert item.attempts == 3
        assert item.next_retry_at is None

        # One retrying event updated in place, then one failure event
        retrying = await _events(db, status="retrying")
        assert len(retrying) == 1
        assert retrying[0].retry_count == 2
        assert len(await _events(db, status="failure")) == 1
        assert len(await _audit(db, outcome="failure")) == 1

    async def test_permission_error_fails_immediately(self, db):
        await create_connection(db, platform="servicenow")
        await create_queue_item(db, external_id="INC0001")
        await db.commit()
        item = await _claim_one(db)
        await queue.process_item(db, item, ScriptedAdapter(PlatformPermissionError("HTTP 401")).factory, now=NOW)
        assert item.status == "failed"
        assert item.attempts == 1
        assert item.error_kind == "permission"

    async def test_unexpected_exception_is_transient(self, db):
        await create_connection(db, platform="servicenow")
        await create_queue_item(db, external_id="INC0001")
        await db.commit()
        item = await _claim_one(db)
        await queue.process_item(db, item, ScriptedAdapter(RuntimeError("boom")).factory, now=NOW)
        assert item.status == "pending"
        assert item.error_kind == "transient"

    async def test_disabled_connection_fails_terminally(self, db):
        await create_connection(db, platform="servicenow", sync_enabled=False)
        await create_queue_item(db, external_id="INC0001")
        await db.commit()
        adapter = ScriptedAdapter()
        item = await _claim_one(db)
        await queue.process_item(db, item, adapter.factory, now=NOW)
        assert item.status == "failed"
        assert item.error_kind == "validation"
        assert adapter.calls == []

    async def test_update_uses_linked_external_id(self, db):
        await create_connection(db, platform="servicenow")
        db.add(TicketLink(organization_id=ORG, platform="servicenow", ticket_id="TICKET-1", external_id="INC0042"))
        await create_queue_item(db)
        await db.commit()
        adapter = ScriptedAdapter()
        item = await _claim_one(db)
        await queue.process_item(db, item, adapter.factory, now=NOW)
        assert adapter.calls[0]["external_id"] == "INC0042"
        assert item.status == "completed"
        assert item.external_id == "INC0042"

    async def test_create_for_linked_ticket_is_sent_as_update(self, db):
        await create_connection(db, platform="servicenow")
        db.add(TicketLink(organization_id=ORG, platform="servicenow", ticket_id="TICKET-1", external_id="INC0042"))
        await create_queue_item(db, action="create")
        await db.commit()
        adapter = ScriptedAdapter()
        item = await _claim_one(db)
        await queue.process_item(db, item, adapter.factory, now=NOW)
        assert adapter.calls[0]["action"] == "update"

    async def test_update_without_external_id_fails(self, db):
        await create_connection(db, platform="servicenow")
        await create_queue_item(db)
        await db.commit()
        item = await _claim_one(db)
        await queue.process_item(db, item, ScriptedAdapter().factory, now=NOW)
        assert item.status == "failed"
        assert "no linked" in item.error_message

    async def test_identity_conflict_is_audited(self, db):
        await create_connection(db, platform="jira")
        db.add(TicketLink(organization_id=ORG, platform="jira", ticket_id="T-OTHER", external_id="SEC-1"))
        await create_queue_item(db, platform="jira", action="create", ticket_id="T-NEW")
        await db.commit()
        item = await _claim_one(db)
        await queue.process_item(db, item, ScriptedAdapter(SendResult(external_id="SEC-1")).factory, now=NOW)
        assert item.status == "completed"
        conflicts = await _audit(db, action="identity_conflict")
        assert len(conflicts) == 1
        assert conflicts[0].outcome == "skipped"
        assert "T-OTHER" in conflicts[0].details

    async def test_requires_processing_status(self, db):
        item = await create_queue_item(db)
        with pytest.raises(QueueStateError):
            await queue.process_item(db, item, ScriptedAdapter().factory)


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


class TestOperatorActions:
    async def test_cancel_pending(self, db):
        item = await create_queue_item(db)
        await queue.cancel(db, item, "ops@example.com")
        assert item.status == "cancelled"
        audit = await _audit(db, action="cancel")
        assert audit[0].user_email == "ops@example.com"

    async def test_cancel_processing_rejected(self, db):
        item = await create_queue_item(db, status="processing")
        with pytest.raises(QueueStateError):
            await queue.cancel(db, item, "ops@example.com")

    async def test_cancel_completed_rejected(self, db):
        item = await create_queue_item(db, status="completed")
        with pytest.raises(QueueStateError):
            await queue.cancel(db, item, "ops@example.com")

    async def test_retry_failed_grants_one_more_attempt(self, db):
        item = await create_queue_item(db, status="failed", attempts=3)
        await queue.retry(db, item, "ops@example.com")
        assert item.status == "pending"
        assert item.attempts == 3
        assert item.max_attempts == 4
        assert item.next_retry_at is None

    async def test_retry_non_failed_rejected(self, db):
        item = await create_queue_item(db, status="pending")
        with pytest.raises(QueueStateError):
            await queue.retry(db, item, "ops@example.com")

    async def test_retry_all_filters_by_platform(self, db):
        await create_queue_item(db, platform="jira", ticket_id="T1", status="failed", attempts=3)
        await create_queue_item(db, platform="servicenow", ticket_id="T2", status="failed", attempts=3)
        await create_queue_item(db, platform="jira", ticket_id="T3", status="completed")
        requeued = await queue.retry_all(db, ORG, "jira", "ops@example.com")
        assert [i.ticket_id for i in requeued] == ["T1"]
        counts = await queue.status_counts(db, ORG)
        assert counts["pending"] == 1
        assert counts["failed"] == 1
        assert counts["completed"] == 1
