"""Visibility tracking for in-flight responses.

The UI publishes whether a response's representation is on screen; the
scheduler subscribes per response id and skips poll work while hidden.
Purely advisory; no timers live here.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from runback.events import Event, EventBus

logger = logging.getLogger(__name__)

VisibilityListener = Callable[[str, bool], None]

VISIBILITY_EVENT = "response_visibility"


class VisibilityTracker:
    """Response id -> on-screen flag, with per-id subscriptions."""

    def __init__(self, default_visible: bool = True) -> None:
        self._default = default_visible
        self._visible: dict[str, bool] = {}
        self._listeners: dict[str, list[VisibilityListener]] = defaultdict(list)

    def publish(self, response_id: str, visible: bool) -> None:
        """Record the new flag and notify this id's subscribers."""
        self._visible[response_id] = visible
        for listener in list(self._listeners.get(response_id, ())):
            listener(response_id, visible)

    def is_visible(self, response_id: str) -> bool:
        return self._visible.get(response_id, self._default)

    def subscribe(self, response_id: str, listener: VisibilityListener) -> None:
        self._listeners[response_id].append(listener)

    def unsubscribe(self, response_id: str, listener: VisibilityListener) -> None:
        listeners = self._listeners.get(response_id)
        if not listeners:
            return
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            del self._listeners[response_id]

    def forget(self, response_id: str) -> None:
        """Drop all state for a response that no longer exists."""
        self._visible.pop(response_id, None)
        self._listeners.pop(response_id, None)

    def attach(self, bus: EventBus) -> None:
        """Consume response_visibility events published on the bus."""
        bus.on(VISIBILITY_EVENT, self.on_event)

    async def on_event(self, event: Event) -> None:
        response_id = event.data.get("response_id")
        if not response_id:
            logger.debug("Ignoring visibility event without response_id")
            return
        self.publish(response_id, bool(event.data.get("visible", True)))
