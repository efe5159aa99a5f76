"""In-process event bus for Runback.

SessionStore publishes a change notification after every committed
mutation (message_added, response_updated, checkpoint_created,
turn_cancelled, session_error). UI bridges publish response_visibility,
which the VisibilityTracker consumes.

Publishing is synchronous and never blocks: events are queued and a
background task hands each one to its handlers. A failing handler is
logged and does not affect the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """A change notification, optionally scoped to one session."""

    type: str
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue of session and visibility events with per-type handlers."""

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    def publish(self, event: Event) -> None:
        """Queue ``event``. Drops it with a warning when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping %s for session %s", event.type, event.session_id)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._deliver_loop(), name="runback-events")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop delivery, then hand any queued events to their handlers."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
        logger.info("Event bus stopped")

    async def _deliver_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Unexpected error delivering %s", event.type)

    async def _deliver(self, event: Event) -> None:
        handlers = self._handlers.get(event.type)
        if handlers:
            await asyncio.gather(*(self._run_handler(h, event) for h in handlers))

    @staticmethod
    async def _run_handler(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handler %s failed for %s", handler.__qualname__, event.type)
