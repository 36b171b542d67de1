"""Read-only access to Codex session logs and the threads index.

Codex writes one append-only JSONL file per session under
``$CODEX_HOME/sessions/YYYY/MM/DD/rollout-<ts>-<id>.jsonl``. The first
record is a ``session_meta`` record carrying id, timestamp, cwd and
source. Codex also keeps a sqlite index (``state_5.sqlite``) with a
``threads`` table; it can lag behind the log files and is only used as a
fallback.

Nothing in this module writes to either store.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from chatrelay.shared.models.session import SessionRecord, SessionSource, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 500
HEAD_BYTES = 24 * 1024
TAIL_BYTES = 64 * 1024
DISPLAY_NAME_MAX = 96
INDEX_FILENAME = "state_5.sqlite"

SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    flags=re.IGNORECASE,
)
_FILE_ID_RE = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.jsonl$",
    flags=re.IGNORECASE,
)
# Used when the first record is longer than the head read and cannot be
# parsed as JSON.
_META_FIELD_RE = {
    name: re.compile(
        r'"type"\s*:\s*"session_meta".*?"' + name + r'"\s*:\s*"((?:\\.|[^"\\])*)"',
        flags=re.DOTALL,
    )
    for name in ("id", "timestamp", "cwd", "source")
}


# ── Helpers ──────────────────────────────────────────────────────


def default_codex_home() -> Path:
    codex_home = os.environ.get("CODEX_HOME", "").strip()
    if codex_home:
        return Path(codex_home)
    return Path.home() / ".codex"


def is_valid_session_id(value: Any) -> bool:
    if not value:
        return False
    return SESSION_ID_RE.match(str(value).strip()) is not None


def normalize_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    if limit <= 0:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def normalize_cwd(value: Any) -> str:
    if not value:
        return ""
    return os.path.abspath(str(value))


def cwd_matches(session_cwd: str, target_cwd: str) -> bool:
    """True if *session_cwd* equals *target_cwd* or is nested under it.

    An empty target matches everything.
    """
    target = normalize_cwd(target_cwd)
    if not target:
        return True
    session = normalize_cwd(session_cwd)
    if not session:
        return False
    return session == target or session.startswith(target.rstrip(os.sep) + os.sep)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch seconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def read_head(path: Path, size: int = HEAD_BYTES) -> str:
    with open(path, "rb") as f:
        return f.read(size).decode("utf-8", errors="replace")


def read_tail(path: Path, size: int = TAIL_BYTES) -> str:
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        end = f.tell()
        f.seek(max(0, end - size))
        return f.read().decode("utf-8", errors="replace")


def extract_text(value: Any) -> str:
    """Visible text from a message payload or content block list."""
    if not value:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        parts = [extract_text(item) for item in value]
        return " ".join(p for p in parts if p).strip()
    if not isinstance(value, dict):
        return ""
    for key in ("text", "output_text"):
        text = value.get(key)
        if isinstance(text, str) and text.strip():
            return text.strip()
    if value.get("content"):
        return extract_text(value["content"])
    return ""


def _entry_text(entry: dict[str, Any]) -> str:
    if str(entry.get("type") or "").lower() == "session_meta":
        return ""
    for candidate in (entry.get("item"), entry.get("payload"), entry.get("data"), entry):
        text = extract_text(candidate)
        if text:
            return text
    return ""


def _iter_json_lines(content: str) -> Iterable[dict[str, Any]]:
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue  # truncated first/last line of a bounded read
        if isinstance(entry, dict):
            yield entry


def display_name_from_head(head: str) -> str:
    for entry in _iter_json_lines(head):
        compact = " ".join(_entry_text(entry).split())
        if not compact:
            continue
        if len(compact) <= DISPLAY_NAME_MAX:
            return compact
        return f"{compact[:DISPLAY_NAME_MAX - 3]}..."
    return ""


def _meta_from_head(head: str) -> dict[str, str]:
    first_line = head.split("\n", 1)[0].strip()
    try:
        entry = json.loads(first_line)
    except json.JSONDecodeError:
        entry = None
    if isinstance(entry, dict) and entry.get("type") == "session_meta":
        payload = entry.get("payload") or {}
        return {
            name: payload.get(name) if isinstance(payload.get(name), str) else ""
            for name in ("id", "timestamp", "cwd", "source")
        }

    meta: dict[str, str] = {}
    for name, pattern in _META_FIELD_RE.items():
        match = pattern.search(head)
        if not match:
            meta[name] = ""
            continue
        try:
            meta[name] = json.loads(f'"{match.group(1)}"')
        except json.JSONDecodeError:
            meta[name] = match.group(1)
    return meta


def record_from_head(path: Path, head: str, fallback_time: datetime) -> SessionRecord | None:
    """Build a SessionRecord from the first bytes of a session log."""
    meta = _meta_from_head(head)
    session_id = meta.get("id") or ""
    if not session_id:
        match = _FILE_ID_RE.search(path.name)
        session_id = match.group(1) if match else ""
    if not is_valid_session_id(session_id):
        return None
    raw_source = meta.get("source") or ""
    return SessionRecord(
        id=session_id,
        created_at=parse_timestamp(meta.get("timestamp")) or fallback_time,
        cwd=meta.get("cwd") or "",
        source=SessionSource.parse(raw_source),
        display_name=display_name_from_head(head),
        file_path=str(path),
        raw_source=raw_source,
    )


@dataclass
class TurnState:
    """Progress of the latest turn in a session log."""
    assistant_message: str = ""
    assistant_timestamp: datetime | None = None
    task_complete: bool = False
    task_complete_timestamp: datetime | None = None


def turn_state_from_tail(tail: str, since: datetime | None = None) -> TurnState:
    state = TurnState()
    for entry in _iter_json_lines(tail):
        entry_ts = parse_timestamp(entry.get("timestamp"))
        if since is not None and entry_ts is not None and entry_ts < since:
            continue
        entry_type = str(entry.get("type") or "").strip().lower()
        payload = entry.get("payload")
        if not isinstance(payload, dict):
            continue
        payload_type = str(payload.get("type") or "").strip().lower()
        if (
            entry_type == "response_item"
            and payload_type == "message"
            and str(payload.get("role") or "").strip().lower() == "assistant"
        ):
            text = extract_text(payload)
            if text:
                state.assistant_message = text
                state.assistant_timestamp = entry_ts
            continue
        if entry_type == "event_msg" and payload_type == "task_complete":
            state.task_complete = True
            state.task_complete_timestamp = entry_ts
            last = payload.get("last_agent_message")
            if not state.assistant_message and isinstance(last, str) and last.strip():
                state.assistant_message = last.strip()
                state.assistant_timestamp = entry_ts
    return state


def last_message_from_tail(tail: str) -> str:
    for entry in reversed(list(_iter_json_lines(tail))):
        text = _entry_text(entry)
        if text:
            return text
    return ""


# ── Index ────────────────────────────────────────────────────────


class ThreadIndex:
    """Read-only view of the sqlite ``threads`` table."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def list_threads(
        self,
        *,
        cwd: str = "",
        source: str = "",
        since: datetime | None = None,
        session_id: str = "",
        limit: int = DEFAULT_LIMIT,
    ) -> list[SessionRecord]:
        """Newest threads matching every given filter; [] on any error."""
        if not self._db_path.exists():
            return []
        clauses: list[str] = []
        params: list[Any] = []
        target_cwd = normalize_cwd(cwd)
        if target_cwd:
            clauses.append("cwd = ?")
            params.append(target_cwd)
        if source:
            clauses.append("source = ?")
            params.append(source)
        if session_id:
            clauses.append("id = ?")
            params.append(session_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(int(since.timestamp()))
        where = " AND ".join(clauses) or "1=1"
        query = (
            "SELECT id, source, cwd, title, created_at, updated_at "
            f"FROM threads WHERE {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ?"
        )
        params.append(normalize_limit(limit))

        try:
            conn = self._connect()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.debug("threads index query failed (%s): %s", self._db_path, exc)
            return []

        records = []
        for row in rows:
            thread_id = str(row["id"] or "").strip()
            if not is_valid_session_id(thread_id):
                continue
            raw_source = str(row["source"] or "").strip()
            records.append(SessionRecord(
                id=thread_id,
                created_at=parse_timestamp(row["created_at"]),
                cwd=str(row["cwd"] or "").strip(),
                source=SessionSource.parse(raw_source),
                display_name=str(row["title"] or "").strip(),
                file_path=None,
                updated_at=parse_timestamp(row["updated_at"]),
                raw_source=raw_source,
            ))
        return records


# ── Store ────────────────────────────────────────────────────────


class CodexSessionStore:
    """Lists and inspects Codex sessions on local disk."""

    def __init__(
        self,
        sessions_dir: Path | None = None,
        index_path: Path | None = None,
    ) -> None:
        home = default_codex_home()
        self.sessions_dir = Path(sessions_dir) if sessions_dir else home / "sessions"
        self.index = ThreadIndex(Path(index_path) if index_path else home / INDEX_FILENAME)

    def _session_files(self) -> list[Path]:
        if not self.sessions_dir.is_dir():
            return []
        files = [p for p in self.sessions_dir.rglob("*.jsonl") if p.is_file()]
        # Paths embed a sortable timestamp, so reverse path order is newest first.
        files.sort(key=str, reverse=True)
        return files

    def list_sessions(self, cwd: str = "", limit: int = DEFAULT_LIMIT) -> list[SessionRecord]:
        limit = normalize_limit(limit)
        sessions: list[SessionRecord] = []
        for path in self._session_files():
            if len(sessions) >= limit:
                break
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                record = record_from_head(path, read_head(path), mtime)
            except OSError as exc:
                # rotated or deleted while scanning
                logger.debug("Skipping session file %s: %s", path, exc)
                continue
            if record is None or not cwd_matches(record.cwd, cwd):
                continue
            sessions.append(record)
        return sessions

    def list_sessions_since(
        self,
        cwd: str = "",
        since: datetime | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SessionRecord]:
        sessions = self.list_sessions(cwd, limit)
        if since is None:
            return sessions
        return [
            s for s in sessions
            if s.created_at is not None and s.created_at >= since
        ]

    def find_newest_diff(
        self,
        cwd: str = "",
        previous_ids: Iterable[str] = (),
        since: datetime | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SessionRecord]:
        """Sessions since *since* not in *previous_ids*, cli first, newest first."""
        known = {str(i).strip() for i in previous_ids if i}
        candidates = [
            s for s in self.list_sessions_since(cwd, since, limit)
            if s.id not in known
        ]
        candidates.sort(
            key=lambda s: (
                s.is_cli,
                s.created_at.timestamp() if s.created_at else 0.0,
            ),
            reverse=True,
        )
        return candidates

    def list_index_threads(
        self,
        cwd: str = "",
        *,
        source: str = "",
        since: datetime | None = None,
        session_id: str = "",
        limit: int = DEFAULT_LIMIT,
    ) -> list[SessionRecord]:
        return self.index.list_threads(
            cwd=cwd, source=source, since=since, session_id=session_id, limit=limit,
        )

    def get_session_meta(self, session_id: str) -> SessionRecord | None:
        """Look a session up in the logs, then in the index."""
        session_id = str(session_id or "").strip()
        if not is_valid_session_id(session_id):
            return None
        for record in self.list_sessions(limit=MAX_LIMIT):
            if record.id == session_id:
                return record
        rows = self.list_index_threads(session_id=session_id, limit=1)
        return rows[0] if rows else None

    def _log_path(self, session_id: str, file_path: str | None) -> Path | None:
        if file_path:
            return Path(file_path)
        record = self.get_session_meta(session_id)
        if record is None or not record.file_path:
            return None
        return Path(record.file_path)

    def get_last_message(self, session_id: str, file_path: str | None = None) -> str:
        if not is_valid_session_id(session_id):
            return ""
        path = self._log_path(session_id, file_path)
        if path is None:
            return ""
        try:
            return last_message_from_tail(read_tail(path))
        except OSError as exc:
            logger.debug("Could not read tail of %s: %s", path, exc)
            return ""

    def get_turn_state(
        self,
        session_id: str,
        *,
        since: datetime | None = None,
        file_path: str | None = None,
    ) -> TurnState:
        if not is_valid_session_id(session_id):
            return TurnState()
        path = self._log_path(session_id, file_path)
        if path is None:
            return TurnState()
        try:
            return turn_state_from_tail(read_tail(path), since)
        except OSError as exc:
            logger.debug("Could not read tail of %s: %s", path, exc)
            return TurnState()


def take_snapshot(
    store: CodexSessionStore,
    cwd: str,
    *,
    limit: int = 50,
    clock: Callable[[], datetime] | None = None,
) -> Snapshot:
    """Capture the sessions known for *cwd* right before a new turn."""
    sessions = store.list_sessions(cwd, limit)
    now = clock() if clock is not None else datetime.now(timezone.utc)
    snapshot = Snapshot(
        previous_latest_id=sessions[0].id if sessions else None,
        previous_ids=frozenset(s.id for s in sessions),
        started_at=now,
        count=len(sessions),
    )
    logger.debug(
        "Snapshot for %s: %d known sessions, latest=%s",
        cwd or "<any>", snapshot.count, snapshot.previous_latest_id,
    )
    return snapshot
