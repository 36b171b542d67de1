"""Abstract base for agent providers.

Each provider knows how to talk to one agent CLI (codex, claude,
gemini): how to build its shell command for a turn, how to read a
result out of its output, and, for streaming-capable agents, how to run
a turn while emitting progress events.
"""
from __future__ import annotations

import abc
import asyncio
import base64
import enum
import logging
import re
import shlex
import shutil
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from ..errors import ErrorKind, TurnCancelledError, TurnError

if TYPE_CHECKING:
    from chatrelay.adapters.event_bus import ProgressChannel
    from ..supervisor import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Shell expression the agent commands use to reference the prompt.
PROMPT_EXPRESSION = '"$PROMPT"'

_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
_REASONING_EFFORTS = frozenset({"minimal", "low", "medium", "high", "xhigh"})


class Transport(str, enum.Enum):
    """How a turn reaches the agent."""
    STREAM = "stream"  # provider.stream_turn(); no pty
    BATCH = "batch"  # one shell command under the supervisor


@dataclass
class ParsedOutput:
    """Reply text and session id read out of an agent's output."""
    text: str = ""
    thread_id: str | None = None
    saw_json: bool = False

    @property
    def usable(self) -> bool:
        return self.saw_json or bool(self.text.strip())


@dataclass
class StreamRequest:
    prompt: str
    cwd: str
    thread_id: str | None = None
    model: str | None = None
    thinking: str | None = None
    timeout: float | None = None


@dataclass
class StreamResult:
    text: str
    thread_id: str | None = None


def strip_ansi(value: str) -> str:
    return _ANSI_OSC_RE.sub("", _ANSI_CSI_RE.sub("", value or ""))


def normalize_reasoning_effort(value: str | None) -> str | None:
    effort = (value or "").strip().lower()
    return effort if effort in _REASONING_EFFORTS else None


def wrap_prompt_command(prompt: str, agent_command: str, *, interactive: bool = False) -> str:
    """Prefix *agent_command* with a base64 decode of *prompt* into $PROMPT.

    Message text never reaches the shell parser; only base64 characters
    are quoted into the command line.
    """
    encoded = base64.b64encode(prompt.encode("utf-8")).decode("ascii")
    parts = [
        f"PROMPT_B64={shlex.quote(encoded)};",
        'PROMPT=$(printf %s "$PROMPT_B64" | base64 --decode);',
    ]
    if interactive:
        parts.append("export TERM=xterm-256color;")
    parts.append(agent_command)
    return " ".join(parts)


async def run_with_limits(
    awaitable: Awaitable[T],
    *,
    timeout: float | None,
    cancel: CancelToken | None,
    agent_name: str,
) -> T:
    """Await a streaming turn, enforcing a deadline and a cancel token."""
    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_wait: asyncio.Task | None = None
    if cancel is not None:
        cancel_wait = asyncio.create_task(cancel.wait())
        waiters.add(cancel_wait)
    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout if timeout and timeout > 0 else None,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_wait is not None and cancel_wait in done:
            raise TurnCancelledError(cancel_wait.result())
        raise TurnError(
            ErrorKind.TIMEOUT,
            f"{agent_name} timed out after {timeout}s",
        )
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if not task.done():
            task.cancel()


class AgentProvider(abc.ABC):
    """Abstract agent provider."""

    transport: Transport = Transport.BATCH
    needs_pty: bool = True
    # Sessions are visible in a local session store we can read.
    tracks_sessions: bool = False
    supports_interactive_session: bool = False

    def __init__(self, command: str, fallback: str | None = None) -> None:
        self._command = self.resolve_command(command, fallback)

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'codex')."""

    @property
    def command(self) -> str:
        return self._command

    @abc.abstractmethod
    def build_command(
        self,
        prompt_expression: str = PROMPT_EXPRESSION,
        *,
        thread_id: str | None = None,
        model: str | None = None,
        thinking: str | None = None,
    ) -> str:
        """Shell command for one batch turn."""

    @abc.abstractmethod
    def parse_output(self, output: str) -> ParsedOutput:
        """Read the reply and session id from batch output."""

    def build_interactive_command(
        self,
        prompt_expression: str = PROMPT_EXPRESSION,
        *,
        model: str | None = None,
        thinking: str | None = None,
    ) -> str:
        """Shell command that opens a new interactive session."""
        raise NotImplementedError(
            f"{self.name} provider does not create interactive sessions"
        )

    def parse_interactive_output(self, output: str) -> ParsedOutput:
        return ParsedOutput(text=strip_ansi(output).strip())

    def list_sessions_command(self) -> str | None:
        """Command printing the agent's sessions, if it has one."""
        return None

    def parse_session_list(self, output: str) -> str | None:
        return None

    async def stream_turn(
        self,
        request: StreamRequest,
        channel: ProgressChannel,
    ) -> StreamResult:
        """Run one turn over the provider's streaming channel."""
        raise NotImplementedError(f"{self.name} provider does not stream")

    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""
        return shutil.which(self._command) is not None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s", command, fallback,
            )
            return fallback
        return command or fallback or ""

    def _quoted_command(self) -> str:
        return shlex.quote(self._command)
