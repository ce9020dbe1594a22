"""Durable output log with broadcast delivery.

Each session owns one OutputLog. The producer appends events; every subscriber
walks the same append-only event list with its own cursor, so a subscriber that
attaches late replays the history and then follows the live tail without gaps
or duplicates. An event is visible to subscribers only after it has been
appended, which is what makes replay + tail seamless for any attach time.

Subscribers never share a queue: detaching (closing or cancelling the iterator)
only drops that subscriber's cursor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from envoy.core.models import OutputType, SessionOutput

logger = logging.getLogger(__name__)


class OutputLog:
    """Append-only event log for one session, fanned out to N subscribers."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._events: list[SessionOutput] = []
        self._buffer = bytearray()
        self._closed = False
        self._wakeup = asyncio.Event()
        self._subscribers = 0

    @property
    def closed(self) -> bool:
        """True once the terminal event has been appended."""
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return self._subscribers

    @property
    def size(self) -> int:
        return len(self._buffer)

    @property
    def terminal_event(self) -> SessionOutput | None:
        if self._closed:
            return self._events[-1]
        return None

    def get_buffer(self) -> bytes:
        """Return all payload bytes appended so far, in arrival order."""
        return bytes(self._buffer)

    def append(self, event: SessionOutput) -> bool:
        """Append an event and wake every subscriber.

        Returns:
            False when the log is already closed and the event was dropped.
        """
        if self._closed:
            logger.debug("Dropping %s event for closed log %s", event.type.value, self.name[:8])
            return False
        if event.type in (OutputType.STDOUT, OutputType.STDERR) and not event.data:
            return True

        if event.data:
            self._buffer.extend(event.data)
        self._events.append(event)
        if event.is_terminal:
            self._closed = True

        # Swap before setting so waiters that wake up re-arm on the fresh event.
        wakeup, self._wakeup = self._wakeup, asyncio.Event()
        wakeup.set()
        return True

    async def subscribe(self) -> AsyncIterator[SessionOutput]:
        """Yield the full history, then live events, ending after the terminal event.

        The subscriber is counted from its first iteration until the generator
        closes. Consumers that may stop early must wrap it in
        `contextlib.aclosing` so the count drops as soon as they leave, not
        when the generator is garbage collected.
        """
        self._subscribers += 1
        cursor = 0
        try:
            while True:
                while cursor < len(self._events):
                    event = self._events[cursor]
                    cursor += 1
                    yield event
                    if event.is_terminal:
                        return
                await self._wakeup.wait()
        finally:
            self._subscribers -= 1
