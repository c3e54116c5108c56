"""Call status events and the non-blocking relay that carries them."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 16


class StatusEvent(StrEnum):
    """Progress of one call, sent to observers as ``{"status": value}``."""

    SENDING_INVITE = "sending_invite"
    AUTHENTICATING = "authenticating"
    TRYING = "trying"
    HANGING_UP_TIMER = "hanging_up_timer"
    ERROR = "error"


class StatusRelay:
    """Bounded, best-effort event channel from one call run to one observer.

    Backpressure policy: ``post`` never waits. When the buffer is full the
    new event is dropped; signalling is never held up by a slow or absent
    observer. ``close`` always succeeds, evicting the oldest buffered event
    if it needs room for the end marker.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue[StatusEvent | None] = asyncio.Queue(capacity)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event: StatusEvent) -> bool:
        """Queue *event*; returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Status buffer full, dropped %s", event)
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            evicted = self._queue.get_nowait()
            self.dropped += 1
            logger.debug("Status buffer full on close, evicted %s", evicted)
        self._queue.put_nowait(None)

    def __aiter__(self) -> StatusRelay:
        return self

    async def __anext__(self) -> StatusEvent:
        event = await self._queue.get()
        if event is None:
            # Keep the marker so further iteration also stops
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return event
