import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Lifecycle event names broadcast to task-tracking subscribers
QUEUE_ENQUEUED = "queue.enqueued"
QUEUE_COMPLETED = "queue.completed"
QUEUE_RETRYING = "queue.retrying"
QUEUE_FAILED = "queue.failed"
QUEUE_CANCELLED = "queue.cancelled"
QUEUE_REQUEUED = "queue.requeued"
WEBHOOK_PROCESSED = "webhook.processed"


class EventBus:
    """In-process async event bus with SSE broadcast support."""

    def __init__(self) -> None:
        self._subscribers: dict[str, asyncio.Queue] = {}
        self._handlers: dict[str, list] = {}

    def register_handler(self, event_type: str, handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(
        self,
        event_type: str,
        payload: dict,
        *,
        platform: str | None = None,
        ticket_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict:
        event = {
            "id": str(uuid.uuid4()),
            "type": event_type,
            "platform": platform,
            "ticket_id": ticket_id,
            "trace_id": trace_id,
            "payload": payload,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        dead_subscribers = []
        for sub_id, queue in self._subscribers.items():
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_subscribers.append(sub_id)
                logger.warning("Dropping events for slow subscriber %s", sub_id)

        for sub_id in dead_subscribers:
            self._subscribers.pop(sub_id, None)

        for handler in self._handlers.get(event_type, []):
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler error for %s", event_type)

        return event

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        sub_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=256)
        self._subscribers[sub_id] = queue
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        self._subscribers.pop(sub_id, None)

    async def stream(self, sub_id: str, queue: asyncio.Queue) -> AsyncGenerator[str, None]:
        try:
            while True:
                event = await queue.get()
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            self.unsubscribe(sub_id)


# Global singleton
event_bus = EventBus()
