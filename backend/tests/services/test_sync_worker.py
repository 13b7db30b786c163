"""Tests for the background delivery worker against a real (SQLite) database."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from itsm_sync.adapters.base import SendResult
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.services.sync_queue_service import claim_due
from itsm_sync.services.sync_worker import SyncWorker
from tests.conftest import ScriptedAdapter, create_connection, create_queue_item

NOW = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


async def _status(session_factory, item_id) -> SyncQueueItem:
    async with session_factory() as session:
        return await session.get(SyncQueueItem, item_id)


class TestRunOnce:
    async def test_delivers_due_items(self, db, session_factory):
        await create_connection(db, platform="servicenow")
        item = await create_queue_item(db, external_id="INC0001")
        await db.commit()

        adapter = ScriptedAdapter()
        worker = SyncWorker(session_factory, adapter.factory, concurrency=1, poll_interval=0.01)
        assert await worker.run_once(now=NOW) == 1

        stored = await _status(session_factory, item.id)
        assert stored.status == "completed"
        assert len(adapter.calls) == 1
        assert worker._inflight == set()

    async def test_same_ticket_delivered_in_order(self, db, session_factory):
        await create_connection(db, platform="servicenow")
        create = await create_queue_item(
            db, action="create", ticket_id="T1", created_at=NOW - timedelta(seconds=2)
        )
        update = await create_queue_item(
            db, action="update", ticket_id="T1", created_at=NOW - timedelta(seconds=1)
        )
        await db.commit()

        adapter = ScriptedAdapter(SendResult(external_id="INC0100"))
        worker = SyncWorker(session_factory, adapter.factory, concurrency=1)

        assert await worker.run_once(now=NOW) == 1
        assert await worker.run_once(now=NOW) == 1
        assert await worker.run_once(now=NOW) == 0

        assert [c["action"] for c in adapter.calls] == ["create", "update"]
        assert adapter.calls[1]["external_id"] == "INC0100"
        assert (await _status(session_factory, create.id)).status == "completed"
        assert (await _status(session_factory, update.id)).external_id == "INC0100"

    async def test_crashed_delivery_releases_claim(self, db, session_factory):
        await create_connection(db, platform="servicenow")
        item = await create_queue_item(db, external_id="INC0001")
        await db.commit()

        def broken_factory(platform, registry):
            raise RuntimeError("adapter construction failed")

        worker = SyncWorker(session_factory, broken_factory, concurrency=1)
        await worker.run_once(now=NOW)

        stored = await _status(session_factory, item.id)
        assert stored.status == "pending"
        assert stored.attempts == 0
        assert worker._inflight == set()

    async def test_nothing_due(self, session_factory):
        worker = SyncWorker(session_factory, ScriptedAdapter().factory)
        assert await worker.run_once(now=NOW) == 0


class TestLifecycle:
    async def test_start_releases_stale_claims(self, db, session_factory):
        item = await create_queue_item(db, status="processing")
        await db.commit()

        worker = SyncWorker(session_factory, ScriptedAdapter().factory, poll_interval=60)
        await worker.start()
        assert worker.running
        await worker.stop()
        assert not worker.running

        assert (await _status(session_factory, item.id)).status == "pending"

    async def test_start_leaves_live_claims_alone(self, db, session_factory):
        """A second worker starting mid-delivery must not take back an in-flight item."""
        item = await create_queue_item(db, platform="jira", ticket_id="T1")
        await db.commit()
        assert await claim_due(db, now=NOW)
        await db.commit()

        other = SyncWorker(session_factory, ScriptedAdapter().factory, poll_interval=60)
        await other.start()
        await other.stop()

        assert (await _status(session_factory, item.id)).status == "processing"
        async with session_factory() as session:
            assert await claim_due(session, now=NOW) == []

    async def test_stop_without_start(self, session_factory):
        await SyncWorker(session_factory).stop()
