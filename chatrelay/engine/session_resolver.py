"""Find the session a new-session turn created.

Agent CLIs write their session record asynchronously and return no id,
so the resolver compares what exists now against a Snapshot taken just
before the turn. Data sources are tried in order:

1. ``DiffStrategy``  - session logs, minus ids known at snapshot time.
2. ``SinceStrategy`` - session logs created since the snapshot.
3. ``IndexStrategy`` - the sqlite threads index (cli sessions only).

Each strategy reports found / ambiguous / nothing. An ambiguous result
is never turned into a guess.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from chatrelay.shared.models.session import SessionRecord, SessionSource, Snapshot
from chatrelay.shared.services.codex_sessions import CodexSessionStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class Resolution:
    """Outcome of one resolution attempt."""
    found: SessionRecord | None = None
    ambiguous: bool = False
    candidates: list[SessionRecord] = field(default_factory=list)
    source: str = ""

    @property
    def candidate_ids(self) -> list[str]:
        return [c.id for c in self.candidates]


def pick_candidate(candidates: Sequence[SessionRecord], source: str) -> Resolution:
    """Accept a single candidate, or a single cli candidate among several."""
    candidates = list(candidates)
    if not candidates:
        return Resolution(source=source)
    if len(candidates) == 1:
        return Resolution(found=candidates[0], candidates=candidates, source=source)
    cli = [c for c in candidates if c.is_cli]
    if len(cli) == 1:
        return Resolution(found=cli[0], candidates=candidates, source=source)
    return Resolution(ambiguous=True, candidates=candidates, source=source)


class ResolverStrategy:
    """One data source for session resolution."""

    name = "base"

    def __init__(self, store: CodexSessionStore, limit: int = 50) -> None:
        self._store = store
        self._limit = limit

    def resolve(self, snapshot: Snapshot, cwd: str) -> Resolution:
        raise NotImplementedError


class DiffStrategy(ResolverStrategy):
    name = "diff"

    def resolve(self, snapshot: Snapshot, cwd: str) -> Resolution:
        candidates = self._store.find_newest_diff(
            cwd, snapshot.previous_ids, snapshot.started_at, self._limit,
        )
        return pick_candidate(candidates, self.name)


class SinceStrategy(ResolverStrategy):
    name = "since"

    def resolve(self, snapshot: Snapshot, cwd: str) -> Resolution:
        sessions = self._store.list_sessions_since(
            cwd, snapshot.started_at, self._limit,
        )
        candidates = [s for s in sessions if s.id not in snapshot.previous_ids]
        return pick_candidate(candidates, self.name)


class IndexStrategy(ResolverStrategy):
    """Fallback to the sqlite index, which may lag behind the logs."""

    name = "index"

    def resolve(self, snapshot: Snapshot, cwd: str) -> Resolution:
        rows = self._store.list_index_threads(
            cwd,
            source=SessionSource.CLI.value,
            since=snapshot.started_at,
            limit=self._limit,
        )
        candidates = [r for r in rows if r.id not in snapshot.previous_ids]
        if len(candidates) > 1:
            return Resolution(ambiguous=True, candidates=candidates, source=self.name)
        return pick_candidate(candidates, self.name)


def default_strategies(store: CodexSessionStore, limit: int = 50) -> list[ResolverStrategy]:
    return [
        DiffStrategy(store, limit),
        SinceStrategy(store, limit),
        IndexStrategy(store, limit),
    ]


class SessionResolver:
    """Runs resolver strategies in order, retrying on a fixed interval."""

    def __init__(
        self,
        strategies: Sequence[ResolverStrategy],
        *,
        attempts: int = 16,
        interval: float = 0.25,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._strategies = list(strategies)
        self._attempts = max(1, attempts)
        self._interval = interval
        self._sleep = sleep

    def resolve_once(self, snapshot: Snapshot, cwd: str) -> Resolution:
        if not cwd:
            # Every session would match an empty cwd.
            return Resolution()
        ambiguous: Resolution | None = None
        for strategy in self._strategies:
            result = strategy.resolve(snapshot, cwd)
            if result.found is not None:
                logger.info(
                    "Resolved session %s via %s (%d candidates)",
                    result.found.id, strategy.name, len(result.candidates),
                )
                return result
            if result.ambiguous and ambiguous is None:
                ambiguous = result
        if ambiguous is not None:
            logger.warning(
                "Ambiguous session resolution via %s: %s",
                ambiguous.source, ", ".join(ambiguous.candidate_ids),
            )
            return ambiguous
        return Resolution()

    async def resolve(self, snapshot: Snapshot, cwd: str) -> Resolution:
        """Retry resolve_once until found, ambiguous, or out of attempts."""
        result = Resolution()
        for attempt in range(1, self._attempts + 1):
            result = await asyncio.to_thread(self.resolve_once, snapshot, cwd)
            if result.found is not None or result.ambiguous:
                return result
            if attempt < self._attempts:
                logger.debug(
                    "No new session yet for %s (attempt %d/%d)",
                    cwd or "<any>", attempt, self._attempts,
                )
                await self._sleep(self._interval)
        logger.info(
            "No new session found for %s after %d attempts",
            cwd or "<any>", self._attempts,
        )
        return result
