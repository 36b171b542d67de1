"""Progress events emitted while a turn runs.

Events are for live rendering only; no turn outcome depends on a
consumer seeing them.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class ProgressEvent:
    """Base progress event."""
    event_type: str = ""


@dataclass
class StatusEvent(ProgressEvent):
    event_type: str = "status"
    phase: str = ""  # starting, running, streaming, completed
    message: str = ""


@dataclass
class ToolActivityEvent(ProgressEvent):
    event_type: str = "tool_activity"
    tool: str = ""
    state: str = ""  # started, completed, failed
    detail: str = ""


@dataclass
class OutputTextEvent(ProgressEvent):
    event_type: str = "output_text"
    text: str = ""


@dataclass
class SessionEvent(ProgressEvent):
    event_type: str = "session"
    thread_id: str = ""
    cwd: str = ""


@dataclass
class ErrorEvent(ProgressEvent):
    event_type: str = "error"
    kind: str = "unknown"
    message: str = ""


@dataclass
class WarningEvent(ProgressEvent):
    event_type: str = "warning"
    message: str = ""


def event_to_dict(event: ProgressEvent) -> dict[str, Any]:
    data = asdict(event)
    data["event"] = data.pop("event_type")
    return data
