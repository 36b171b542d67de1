"""Claude provider.

Streams turns through claude_agent_sdk.query(); the batch path runs
``claude -p --output-format json`` under the supervisor.
"""
from __future__ import annotations

import json
import logging
import re
import shlex
from typing import Any

from chatrelay.adapters.event_bus import ProgressChannel
from chatrelay.adapters.events import (
    OutputTextEvent,
    SessionEvent,
    StatusEvent,
    ToolActivityEvent,
)

from ..errors import ErrorKind, TurnError, classify_error
from .base import (
    PROMPT_EXPRESSION,
    AgentProvider,
    ParsedOutput,
    StreamRequest,
    StreamResult,
    Transport,
    strip_ansi,
)

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    flags=re.IGNORECASE,
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_session_id(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", str(value)).strip().strip("'\"\\").strip()
    return cleaned if _SESSION_ID_RE.match(cleaned) else None


def _json_payload(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return payload
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


class ClaudeProvider(AgentProvider):
    """Provider backed by Claude Code (SDK for streaming, CLI for batch)."""

    transport = Transport.STREAM
    needs_pty = True

    def __init__(
        self,
        command: str = "claude",
        *,
        transport: Transport | str = Transport.STREAM,
        permission_mode: str = "bypassPermissions",
    ) -> None:
        super().__init__(command, "claude")
        self.transport = Transport(transport)
        self._permission_mode = permission_mode

    @property
    def name(self) -> str:
        return "claude"

    def build_command(
        self,
        prompt_expression: str = PROMPT_EXPRESSION,
        *,
        thread_id: str | None = None,
        model: str | None = None,
        thinking: str | None = None,
    ) -> str:
        parts = [
            self._quoted_command(),
            "-p", prompt_expression,
            "--output-format", "json",
            "--dangerously-skip-permissions",
        ]
        if model:
            parts.extend(["--model", shlex.quote(model)])
        safe_id = sanitize_session_id(thread_id)
        if safe_id:
            parts.extend(["--resume", shlex.quote(safe_id)])
        return " ".join(parts)

    def parse_output(self, output: str) -> ParsedOutput:
        trimmed = strip_ansi(output).strip()
        if not trimmed:
            return ParsedOutput()
        payload = _json_payload(trimmed)
        if payload is None:
            return ParsedOutput(text=trimmed)
        thread_id = sanitize_session_id(
            payload.get("session_id")
            or payload.get("sessionId")
            or payload.get("conversation_id")
            or payload.get("conversationId")
        )
        text = payload.get("result")
        if not isinstance(text, str):
            text = payload.get("text")
        if not isinstance(text, str):
            text = payload.get("output")
        if not isinstance(text, str) and payload.get("structured_output") is not None:
            text = json.dumps(payload["structured_output"], indent=2)
        return ParsedOutput(
            text=text.strip() if isinstance(text, str) else "",
            thread_id=thread_id,
            saw_json=True,
        )

    async def stream_turn(
        self,
        request: StreamRequest,
        channel: ProgressChannel,
    ) -> StreamResult:
        """Run a turn via the Claude Agent SDK."""
        try:
            from claude_agent_sdk import query, ClaudeAgentOptions
        except ImportError as exc:
            raise TurnError(
                ErrorKind.CLI_MISSING,
                "claude_agent_sdk not installed",
            ) from exc

        options = ClaudeAgentOptions(
            permission_mode=self._permission_mode,
            cwd=request.cwd or ".",
            model=request.model,
            resume=request.thread_id or None,
        )

        thread_id = request.thread_id or None
        texts: list[str] = []
        result_text = ""
        await channel.emit(StatusEvent(phase="starting", message="Claude: sending turn"))
        try:
            async for message in query(prompt=request.prompt, options=options):
                session_id = sanitize_session_id(getattr(message, "session_id", None))
                if session_id is None and getattr(message, "subtype", None) == "init":
                    data = getattr(message, "data", None) or {}
                    session_id = sanitize_session_id(data.get("session_id"))
                if session_id and session_id != thread_id:
                    thread_id = session_id
                    await channel.emit(SessionEvent(thread_id=session_id, cwd=request.cwd))

                if hasattr(message, "result"):
                    if getattr(message, "is_error", False):
                        detail = str(message.result or "Claude reported an error")
                        raise TurnError(classify_error(None, detail), detail)
                    result_text = str(message.result or "")
                    await channel.emit(StatusEvent(phase="completed", message="Claude: finishing reply"))
                    continue

                for block in getattr(message, "content", None) or []:
                    if isinstance(getattr(block, "text", None), str) and block.text.strip():
                        texts.append(block.text.strip())
                        await channel.emit(OutputTextEvent(text=block.text.strip()))
                    elif hasattr(block, "name") and hasattr(block, "input"):
                        await channel.emit(ToolActivityEvent(
                            tool=str(block.name),
                            state="started",
                            detail=json.dumps(block.input, default=str)[:200],
                        ))
        except TurnError:
            raise
        except Exception as exc:
            # SDK transport failures (CLI missing, process died) surface here
            raise TurnError(
                classify_error(None, str(exc)),
                f"Claude failed: {exc}",
            ) from exc

        reply = (result_text or (texts[-1] if texts else "")).strip()
        return StreamResult(text=reply, thread_id=thread_id)
