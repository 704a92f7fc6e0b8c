"""Side-effect events for the coach server.

The REST layer emits an Event when a thread is created or deleted and after
every completed chat turn. The bus hands each one to the audit persister
(the chat_events table) and then to every handler registered for its type,
off the request path. A failing handler is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

THREAD_CREATED = "thread_created"
THREAD_DELETED = "thread_deleted"
TURN_COMPLETED = "turn_completed"


@dataclass
class Event:
    type: str
    user_id: str
    data: dict[str, Any] = field(default_factory=dict)
    thread_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue of chat events drained by one background task."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = {}
        self._persister: EventHandler | None = None
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug("%s subscribed to %s", handler.__qualname__, event_type)

    def set_db_persister(self, persister: EventHandler) -> None:
        """Write every event to the audit table before handlers see it."""
        self._persister = persister

    async def emit(self, event: Event) -> None:
        """Queue an event without waiting for it to be handled.

        Once max_queue events are waiting, new ones are dropped.
        """
        if self._queue.full():
            logger.warning("Event queue full, dropping %s for thread %s", event.type, event.thread_id)
            return
        self._queue.put_nowait(event)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._work(), name="coach-events")
            logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the worker, then deliver whatever is still queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
        logger.info("Event bus stopped")

    async def _work(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event %s was not delivered", event.type)

    async def _deliver(self, event: Event) -> None:
        if self._persister is not None:
            try:
                await self._persister(event)
            except Exception as e:
                logger.warning("Could not record %s event: %s", event.type, e)
        handlers = self._subscribers.get(event.type)
        if handlers:
            await asyncio.gather(*(self._run(handler, event) for handler in handlers))

    @staticmethod
    async def _run(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s failed on %s", handler.__qualname__, event.type)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
