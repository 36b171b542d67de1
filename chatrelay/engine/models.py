"""Request and result types for a single turn."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field

from chatrelay.adapters.events import ProgressEvent


class TurnMode(str, enum.Enum):
    """Execution path a turn took."""
    RESUME_STREAM = "resume_stream"
    RESUME_BATCH = "resume_batch"
    NEW_STREAM = "new_stream"
    NEW_INTERACTIVE = "new_interactive"
    NEW_BATCH = "new_batch"


@dataclass
class TurnRequest:
    """One user message addressed to an agent."""
    chat_id: str
    prompt: str
    topic_id: str | None = None
    agent_id: str | None = None  # None means the configured default


@dataclass
class ExecutionResult:
    """What a turn produced."""
    text: str
    thread_id: str = ""
    conversation_id: str = ""
    events: list[ProgressEvent] = field(default_factory=list)
    cwd: str = ""
    mode: TurnMode | None = None
    # True when no new session was found and the single pre-existing
    # session was continued instead.
    reused_session: bool = False
