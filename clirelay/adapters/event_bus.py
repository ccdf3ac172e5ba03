"""Async event bus bridging orchestrator callbacks to consumers.

Turns push events synchronously from stdout/stderr readers and buffer
timers; consumers (the SSE fan-out, the terminal printer) drain them
with ``async for event in bus.consume()``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from clirelay.adapters.events import RelayEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Queue-backed event sink."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[RelayEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def __call__(self, event: RelayEvent) -> None:
        self.publish(event)

    def publish(self, event: RelayEvent) -> None:
        """Enqueue *event* without waiting.

        Sink calls happen inside stream callbacks, so a full queue drops
        the event with an error log instead of applying backpressure.
        """
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    def make_callback(self):
        """Return a sink callable for Orchestrator.run_turn()."""
        return self.publish

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def consume(self) -> AsyncIterator[RelayEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop once the queue is empty."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
