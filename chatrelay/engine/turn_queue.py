"""Per-conversation FIFO of turns.

Turns that share a key run one after another in submission order.
Turns with different keys run concurrently. A failed turn is reported
to whoever enqueued it and does not stop the turns behind it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def conversation_key(chat_id: str | int, topic_id: str | int | None = None) -> str:
    topic = str(topic_id).strip() if topic_id not in (None, "") else "root"
    return f"{chat_id}:{topic}"


class TurnQueue:
    """Keyed chain of asyncio tasks."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task[Any]] = {}

    def __len__(self) -> int:
        return len(self._tails)

    def is_busy(self, key: str) -> bool:
        return key in self._tails

    async def enqueue(self, key: str, task_factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``task_factory()`` after every earlier turn for *key*."""
        previous = self._tails.get(key)

        async def _run() -> T:
            if previous is not None:
                # The previous turn's outcome belongs to its own caller.
                await asyncio.gather(previous, return_exceptions=True)
            return await task_factory()

        task = asyncio.create_task(_run(), name=f"turn:{key}")
        self._tails[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        return await asyncio.shield(task)

    def _on_done(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]
        if task.cancelled():
            logger.info("Turn for %s was cancelled", key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Turn for %s failed: %s", key, exc)

    async def drain(self) -> None:
        """Wait for every queued turn to settle."""
        while self._tails:
            await asyncio.gather(*list(self._tails.values()), return_exceptions=True)
