"""Conversation state: thread ids and project overrides per conversation.

State is owned by a ConversationState instance that the orchestrator
holds; nothing here is module-global.

Storage layout:
    {state_dir}/threads.json            {thread_key: thread_id}
    {state_dir}/project_overrides.json  {thread_key: cwd}

Writes are scheduled as background tasks, serialized per file, and never
raise into the turn that scheduled them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from chatrelay.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

THREADS_FILE = "threads.json"
PROJECT_OVERRIDES_FILE = "project_overrides.json"
ROOT_TOPIC = "root"


def normalize_topic_id(topic_id: str | int | None) -> str:
    if topic_id is None:
        return ROOT_TOPIC
    text = str(topic_id).strip()
    return text or ROOT_TOPIC


def build_thread_key(chat_id: str | int, topic_id: str | int | None, agent_id: str) -> str:
    return f"{chat_id}:{normalize_topic_id(topic_id)}:{agent_id}"


def _legacy_thread_key(chat_id: str | int, agent_id: str) -> str:
    return f"{chat_id}:{agent_id}"


@dataclass
class ThreadState:
    """Association between a conversation thread and an agent session."""
    thread_key: str
    thread_id: str = ""
    migrated: bool = False


class ConversationState:
    """Registry of thread ids and project overrides."""

    def __init__(self, state_dir: Path | None = None) -> None:
        self._state_dir = Path(state_dir) if state_dir is not None else None
        self.threads: dict[str, str] = {}
        self.project_overrides: dict[str, str] = {}
        self.turn_counts: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    # ── Threads ──

    def get_thread_state(
        self, chat_id: str | int, topic_id: str | int | None, agent_id: str,
    ) -> ThreadState:
        """Current thread for a conversation, migrating legacy keys."""
        key = build_thread_key(chat_id, topic_id, agent_id)
        thread_id = self.threads.get(key, "")
        if thread_id:
            return ThreadState(thread_key=key, thread_id=thread_id)

        if normalize_topic_id(topic_id) == ROOT_TOPIC:
            legacy = _legacy_thread_key(chat_id, agent_id)
            legacy_id = self.threads.pop(legacy, "")
            if legacy_id:
                self.threads[key] = legacy_id
                logger.info("Migrated legacy thread key %s -> %s", legacy, key)
                return ThreadState(thread_key=key, thread_id=legacy_id, migrated=True)

        return ThreadState(thread_key=key)

    def set_thread(self, thread_key: str, thread_id: str) -> None:
        self.threads[thread_key] = thread_id

    def clear_thread(self, thread_key: str) -> bool:
        """Forget a conversation's session (explicit reset or stale session)."""
        self.turn_counts.pop(thread_key, None)
        return self.threads.pop(thread_key, None) is not None

    def record_turn(self, thread_key: str) -> int:
        count = self.turn_counts.get(thread_key, 0) + 1
        self.turn_counts[thread_key] = count
        return count

    # ── Project overrides ──

    def get_project_override(self, thread_key: str) -> str:
        return self.project_overrides.get(thread_key, "")

    def set_project_override(self, thread_key: str, cwd: str) -> None:
        self.project_overrides[thread_key] = cwd

    def clear_project_override(self, thread_key: str) -> bool:
        return self.project_overrides.pop(thread_key, None) is not None

    # ── Persistence ──

    def _path(self, filename: str) -> Path | None:
        if self._state_dir is None:
            return None
        return self._state_dir / filename

    def load(self) -> None:
        """Read persisted state. Unreadable files are logged and skipped."""
        self.threads = self._load_map(THREADS_FILE)
        self.project_overrides = self._load_map(PROJECT_OVERRIDES_FILE)

    def _load_map(self, filename: str) -> dict[str, str]:
        path = self._path(filename)
        if path is None or not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not load %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected a JSON object", path)
            return {}
        return {str(k): str(v) for k, v in data.items() if v}

    async def _write_map(self, filename: str, data: dict[str, str]) -> None:
        path = self._path(filename)
        if path is None:
            return
        lock = self._locks.setdefault(filename, asyncio.Lock())
        async with lock:
            content = json.dumps(data, indent=2, sort_keys=True)
            await asyncio.to_thread(atomic_write_text, path, content)

    async def persist_threads(self) -> None:
        await self._write_map(THREADS_FILE, dict(self.threads))

    async def persist_project_overrides(self) -> None:
        await self._write_map(PROJECT_OVERRIDES_FILE, dict(self.project_overrides))

    def _schedule(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"persist:{label}")
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Failed to persist %s: %s", label, exc)

        task.add_done_callback(_done)
        return task

    def schedule_persist_threads(self) -> asyncio.Task:
        """Fire-and-forget write of the thread map."""
        return self._schedule(self.persist_threads(), "threads")

    def schedule_persist_project_overrides(self) -> asyncio.Task:
        """Fire-and-forget write of the project override map."""
        return self._schedule(self.persist_project_overrides(), "project overrides")

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
