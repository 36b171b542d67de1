"""Session records written by agent CLIs, and pre-turn snapshots."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionSource(str, enum.Enum):
    CLI = "cli"
    EXEC = "exec"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> SessionSource:
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class SessionRecord:
    """One agent session as recorded on disk (read-only)."""

    id: str
    created_at: datetime | None
    cwd: str = ""
    source: SessionSource = SessionSource.UNKNOWN
    display_name: str = ""
    file_path: str | None = None  # None for index rows
    updated_at: datetime | None = None
    raw_source: str = ""  # e.g. "vscode" when source is UNKNOWN

    @property
    def is_cli(self) -> bool:
        return self.source is SessionSource.CLI


@dataclass(frozen=True)
class Snapshot:
    """Known sessions for a working directory just before a new turn."""

    previous_latest_id: str | None
    previous_ids: frozenset[str]
    started_at: datetime = field(default_factory=_utcnow)
    count: int = 0
