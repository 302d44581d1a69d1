"""Call state change fan-out for UI subscribers.

Each subscriber gets its own bounded asyncio.Queue. When a queue is full the
oldest event is dropped so a slow consumer never blocks the controller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, TypedDict

LOGGER = logging.getLogger(__name__)


class CallEvent(TypedDict):
    type: str  # state | muted | hold | speaker | error
    timestamp: float
    call: dict[str, Any] | None


class CallEventBroadcaster:
    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue[CallEvent]] = []

    def subscribe(self) -> asyncio.Queue[CallEvent]:
        q: asyncio.Queue[CallEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        LOGGER.debug("Call event subscriber added (total: %d)", len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[CallEvent]) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            return
        LOGGER.debug("Call event subscriber removed (total: %d)", len(self._subscribers))

    def emit(self, event_type: str, call: dict[str, Any] | None) -> None:
        event: CallEvent = {"type": event_type, "timestamp": time.time(), "call": call}
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
