"""Background delivery loop for the outbound queue."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime

from itsm_sync.adapters.factory import build_adapter
from itsm_sync.config import settings
from itsm_sync.core.metrics import bg_task_last_success, bg_task_runs_total, sync_inflight
from itsm_sync.models.sync_queue import SyncQueueItem
from itsm_sync.services.sync_queue_service import claim_due, process_item, release_claims

logger = logging.getLogger(__name__)

TASK_NAME = "sync_worker"


class SyncWorker:
    """Claims due queue items and delivers them with bounded concurrency.

    The claim runs under a short-held lock together with the in-flight key
    set, so one worker never holds two items of the same (platform,
    ticket_id); the conditional claim in the database covers other processes.
    Claims carry a lease: a worker only takes back processing items whose
    claim is older than SYNC_CLAIM_LEASE_SECONDS, never a live delivery held
    elsewhere. Each item is delivered in its own session.
    """

    def __init__(
        self,
        session_factory=None,
        adapter_factory=build_adapter,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
    ):
        if session_factory is None:
            from itsm_sync.database import async_session

            session_factory = async_session
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory
        self.poll_interval = poll_interval or settings.SYNC_POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self._semaphore = asyncio.Semaphore(concurrency or settings.SYNC_WORKER_CONCURRENCY)
        self._claim_lock = asyncio.Lock()
        self._inflight: set[tuple[str, str]] = set()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self.release_stale_claims()
        self._task = asyncio.create_task(self._loop())
        logger.info("Sync worker started (poll every %.1fs)", self.poll_interval)

    async def release_stale_claims(self) -> int:
        async with self.session_factory() as db:
            released = await release_claims(db)
            await db.commit()
        if released:
            logger.warning("Released %d expired processing claims", released)
        return released

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync worker stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.release_stale_claims()
                await self.run_once()
                bg_task_runs_total.labels(task_name=TASK_NAME, status="success").inc()
                bg_task_last_success.labels(task_name=TASK_NAME).set(time.time())
            except asyncio.CancelledError:
                raise
            except Exception:
                bg_task_runs_total.labels(task_name=TASK_NAME, status="error").inc()
                logger.exception("Error in sync worker loop")
            await asyncio.sleep(self.poll_interval)

    async def run_once(self, now: datetime | None = None) -> int:
        """Claim one batch and deliver it. Returns the number of items claimed."""
        async with self._claim_lock:
            async with self.session_factory() as db:
                items = await claim_due(
                    db, now=now, limit=self.batch_size, exclude_keys=frozenset(self._inflight)
                )
                await db.commit()
            for item in items:
                self._inflight.add(item.key)
            sync_inflight.set(len(self._inflight))

        if items:
            await asyncio.gather(*(self._deliver(item, now) for item in items))
        return len(items)

    async def _deliver(self, claimed: SyncQueueItem, now: datetime | None) -> None:
        async with self._semaphore:
            try:
                async with self.session_factory() as db:
                    item = await db.get(SyncQueueItem, claimed.id)
                    await process_item(db, item, self.adapter_factory, now)
            except Exception:
                logger.exception(
                    "Delivery crashed; releasing claim",
                    extra={"queue_item_id": str(claimed.id), "platform": claimed.platform},
                )
                async with self.session_factory() as db:
                    await release_claims(db, [claimed.id])
                    await db.commit()
            finally:
                self._inflight.discard(claimed.key)
                sync_inflight.set(len(self._inflight))
