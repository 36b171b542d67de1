"""Shared fixtures: a throwaway CODEX_HOME with session-log builders."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Fixed epoch so tests never depend on the wall clock.
T0 = 1_800_000_000.0


def session_id(n: int) -> str:
    return f"019a0000-0000-7000-8000-{n:012d}"


def at(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def iso(ts: float) -> str:
    return at(ts).isoformat().replace("+00:00", "Z")


def assistant_entry(ts: float, text: str) -> dict:
    return {
        "timestamp": iso(ts),
        "type": "response_item",
        "payload": {
            "type": "message",
            "role": "assistant",
            "content": [{"type": "output_text", "text": text}],
        },
    }


def task_complete_entry(ts: float, last_message: str | None = None) -> dict:
    payload = {"type": "task_complete"}
    if last_message is not None:
        payload["last_agent_message"] = last_message
    return {"timestamp": iso(ts), "type": "event_msg", "payload": payload}


class CodexHome:
    """Writes codex-style rollout files and index rows under a temp dir."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.sessions_dir = root / "sessions"
        self.index_path = root / "state_5.sqlite"

    def write_session(
        self,
        sid: str,
        *,
        cwd: str,
        created: float,
        source: str = "cli",
        prompt: str = "",
        entries: tuple[dict, ...] = (),
    ) -> Path:
        day = self.sessions_dir / at(created).strftime("%Y/%m/%d")
        day.mkdir(parents=True, exist_ok=True)
        stamp = at(created).strftime("%Y-%m-%dT%H-%M-%S")
        path = day / f"rollout-{stamp}-{sid}.jsonl"
        lines = [{
            "timestamp": iso(created),
            "type": "session_meta",
            "payload": {
                "id": sid,
                "timestamp": iso(created),
                "cwd": cwd,
                "source": source,
            },
        }]
        if prompt:
            lines.append({
                "timestamp": iso(created),
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": prompt}],
                },
            })
        lines.extend(entries)
        path.write_text("".join(json.dumps(line) + "\n" for line in lines))
        return path

    def append(self, path: Path, *entries: dict) -> None:
        with open(path, "a") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")

    def add_index_row(
        self,
        sid: str,
        *,
        cwd: str,
        created: float,
        source: str = "cli",
        title: str = "",
    ) -> None:
        conn = sqlite3.connect(self.index_path)
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS threads ("
                "id TEXT PRIMARY KEY, source TEXT, cwd TEXT, title TEXT, "
                "created_at INTEGER, updated_at INTEGER)"
            )
            conn.execute(
                "INSERT INTO threads VALUES (?, ?, ?, ?, ?, ?)",
                (sid, source, cwd, title, int(created), int(created)),
            )
            conn.commit()
        finally:
            conn.close()


@pytest.fixture
def codex_home(tmp_path: Path) -> CodexHome:
    root = tmp_path / "codex"
    root.mkdir()
    return CodexHome(root)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path
