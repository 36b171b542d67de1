"""Ordered progress channel for a single turn.

The orchestrator emits typed events into the channel. The channel keeps
them in order for the ExecutionResult, forwards each one to the caller's
callback, and can also be consumed as an async stream.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from chatrelay.adapters.events import ProgressEvent
from chatrelay.engine.config import EventCallback, fire_event

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Records a turn's events and fans them out to consumers."""

    def __init__(
        self,
        callback: EventCallback | None = None,
        maxsize: int = 5000,
    ) -> None:
        self._callback = callback
        self._events: list[ProgressEvent] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._closed = False

    @property
    def events(self) -> list[ProgressEvent]:
        """Events emitted so far, in emission order."""
        return list(self._events)

    async def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug("ProgressChannel closed, dropping %s", event.event_type)
            return
        self._events.append(event)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "ProgressChannel queue full, dropping stream copy of %s",
                event.event_type,
            )
        await fire_event(self._callback, event)

    async def consume(self) -> AsyncIterator[ProgressEvent]:
        """Yield events as they arrive. Stops after close() drains."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop accepting events."""
        self._closed = True
