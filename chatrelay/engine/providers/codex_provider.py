"""Codex CLI provider.

Three ways to run a codex turn:

- streaming: ``codex exec --json`` with the prompt on stdin, JSONL events
  normalised into progress events as they arrive;
- batch: the same ``codex exec --json`` as a shell command under the
  supervisor;
- interactive: the full-screen ``codex`` TUI under a pty, used to create
  new sessions that show up in ``codex resume``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from typing import Any

from chatrelay.adapters.event_bus import ProgressChannel
from chatrelay.adapters.events import (
    ErrorEvent,
    OutputTextEvent,
    ProgressEvent,
    SessionEvent,
    StatusEvent,
    ToolActivityEvent,
    WarningEvent,
)

from ..errors import ErrorKind, TurnError, classify_error
from .base import (
    PROMPT_EXPRESSION,
    AgentProvider,
    ParsedOutput,
    StreamRequest,
    StreamResult,
    Transport,
    normalize_reasoning_effort,
    strip_ansi,
)

logger = logging.getLogger(__name__)

_RESUME_ID_RE = re.compile(r"codex resume ([0-9a-f-]{16,})", flags=re.IGNORECASE)
_CONTROL_RESIDUE_RE = re.compile(r"^[?\[\]0-9;<>uhtlrmc\\]+$")
_NOISE_PREFIXES = (
    "WARNING: proceeding",
    "Continue anyway?",
    "Error: Operation not permitted",
)
_NOISE_PREFIX_RE = re.compile(r"^(tip:|usage:|for more information|https?://|tui)", re.IGNORECASE)
_MIN_REPLY_CHARS = 8
# JSONL lines can carry whole file diffs.
_STREAM_LINE_LIMIT = 16 * 1024 * 1024


def is_useful_interactive_reply(text: str) -> bool:
    """False for TUI chrome, hints and escape-sequence residue."""
    normalized = " ".join((text or "").split())
    if len(normalized) < _MIN_REPLY_CHARS:
        return False
    if normalized.startswith(_NOISE_PREFIXES) or _NOISE_PREFIX_RE.match(normalized):
        return False
    if "interactive TUI" in normalized:
        return False
    return _CONTROL_RESIDUE_RE.match(normalized) is None


def _item_state(event_type: str, status: Any) -> str:
    if event_type == "item.started":
        return "started"
    if str(status or "").lower() == "failed":
        return "failed"
    return "completed"


def _summarize_command_output(item: dict[str, Any]) -> str:
    output = str(item.get("aggregated_output") or "").strip()
    if not output:
        exit_code = item.get("exit_code")
        return f"exit {exit_code}" if exit_code is not None else ""
    last_line = output.splitlines()[-1]
    return last_line[:200]


def normalize_thread_event(
    raw: dict[str, Any],
    *,
    cwd: str = "",
) -> list[ProgressEvent]:
    """Translate one ``codex exec --json`` event into progress events."""
    event_type = str(raw.get("type") or "")

    if event_type == "thread.started":
        return [
            SessionEvent(thread_id=str(raw.get("thread_id") or ""), cwd=cwd),
            StatusEvent(phase="starting", message="Codex: session started"),
        ]
    if event_type == "turn.started":
        return [StatusEvent(phase="starting", message="Codex: sending turn")]
    if event_type == "turn.completed":
        return [StatusEvent(phase="completed", message="Codex: finishing reply")]
    if event_type in ("turn.failed", "error"):
        error = raw.get("error") if event_type == "turn.failed" else raw
        message = ""
        if isinstance(error, dict):
            message = str(error.get("message") or "")
        message = message or "Codex could not complete the request"
        kind = classify_error(None, message)
        return [ErrorEvent(kind=kind.value, message=message)]

    item = raw.get("item")
    if not isinstance(item, dict):
        return []
    item_type = str(item.get("type") or "")

    if item_type == "agent_message":
        text = str(item.get("text") or "").strip()
        if not text:
            return []
        events: list[ProgressEvent] = [OutputTextEvent(text=text)]
        if event_type in ("item.started", "item.updated"):
            events.append(StatusEvent(phase="streaming", message="Codex: writing reply"))
        return events
    if item_type == "reasoning":
        return [StatusEvent(phase="running", message="Codex: reasoning")]
    if item_type == "todo_list":
        return [StatusEvent(phase="running", message="Codex: updating plan")]
    if item_type == "command_execution":
        return [ToolActivityEvent(
            tool=str(item.get("command") or "command_execution"),
            state=_item_state(event_type, item.get("status")),
            detail=_summarize_command_output(item),
        )]
    if item_type == "mcp_tool_call":
        tool = ":".join(
            str(part) for part in (item.get("server"), item.get("tool")) if part
        )
        return [ToolActivityEvent(
            tool=tool or "mcp_tool_call",
            state=_item_state(event_type, item.get("status")),
        )]
    if item_type == "web_search":
        return [ToolActivityEvent(
            tool="web_search",
            state=_item_state(event_type, item.get("status")),
            detail=str(item.get("query") or ""),
        )]
    if item_type == "file_change":
        changes = item.get("changes") or []
        detail = ", ".join(
            f"{c.get('kind') or 'update'}:{c.get('path') or '?'}"
            for c in changes if isinstance(c, dict)
        )
        return [ToolActivityEvent(
            tool="file_change",
            state=_item_state(event_type, item.get("status")),
            detail=detail,
        )]
    if item_type == "error":
        return [WarningEvent(message=str(item.get("message") or "Codex reported an error"))]
    return []


class CodexProvider(AgentProvider):
    """Provider backed by the OpenAI Codex CLI."""

    transport = Transport.STREAM
    needs_pty = False
    tracks_sessions = True
    supports_interactive_session = True

    def __init__(
        self,
        command: str = "codex",
        *,
        transport: Transport | str = Transport.STREAM,
        sandbox_mode: str = "workspace-write",
        approval_policy: str = "never",
        interactive_sessions: bool = True,
    ) -> None:
        super().__init__(command, "codex")
        self.transport = Transport(transport)
        self.supports_interactive_session = interactive_sessions
        self._sandbox_mode = sandbox_mode
        self._approval_policy = approval_policy

    @property
    def name(self) -> str:
        return "codex"

    # ── Shell commands ──

    @staticmethod
    def _optional_args(model: str | None, thinking: str | None) -> list[str]:
        args: list[str] = []
        if model:
            args.extend(["--model", shlex.quote(model)])
        effort = normalize_reasoning_effort(thinking)
        if effort:
            args.extend(["--config", shlex.quote(f'model_reasoning_effort="{effort}"')])
        return args

    def build_command(
        self,
        prompt_expression: str = PROMPT_EXPRESSION,
        *,
        thread_id: str | None = None,
        model: str | None = None,
        thinking: str | None = None,
    ) -> str:
        parts = [self._quoted_command(), "exec"]
        if thread_id:
            parts.extend(["resume", shlex.quote(thread_id)])
        parts.extend(["--json", "--skip-git-repo-check", "--yolo"])
        parts.extend(self._optional_args(model, thinking))
        parts.append(prompt_expression)
        return " ".join(parts)

    def build_interactive_command(
        self,
        prompt_expression: str = PROMPT_EXPRESSION,
        *,
        model: str | None = None,
        thinking: str | None = None,
    ) -> str:
        parts = [
            self._quoted_command(),
            "--no-alt-screen",
            "-a", shlex.quote(self._approval_policy),
            "-s", shlex.quote(self._sandbox_mode),
        ]
        parts.extend(self._optional_args(model, thinking))
        parts.append(prompt_expression)
        return " ".join(parts)

    # ── Output parsing ──

    def parse_output(self, output: str) -> ParsedOutput:
        """Parse ``codex exec --json`` output.

        Prefers messages on the "final" channel, otherwise the last
        message. A JSON object may be wrapped across several lines by
        the pty.
        """
        thread_id: str | None = None
        all_messages: list[str] = []
        final_messages: list[str] = []
        saw_json = False
        buffer = ""
        for line in (output or "").splitlines():
            if not buffer:
                if not line.startswith("{"):
                    continue
                buffer = line
            else:
                buffer += line
            try:
                payload = json.loads(buffer)
            except json.JSONDecodeError:
                continue
            saw_json = True
            buffer = ""
            if not isinstance(payload, dict):
                continue
            if payload.get("type") == "thread.started" and payload.get("thread_id"):
                thread_id = str(payload["thread_id"])
                continue
            item = payload.get("item")
            if payload.get("type") != "item.completed" or not isinstance(item, dict):
                continue
            text = item.get("text")
            if "message" not in str(item.get("type") or "") or not isinstance(text, str):
                continue
            if not text.strip():
                continue
            all_messages.append(text)
            channel = (
                item.get("channel")
                or (item.get("message") or {}).get("channel")
                or (item.get("metadata") or {}).get("channel")
                or ""
            )
            if str(channel).lower() == "final":
                final_messages.append(text)

        selected = final_messages or all_messages[-1:]
        return ParsedOutput(
            text="\n".join(selected).strip(),
            thread_id=thread_id,
            saw_json=saw_json,
        )

    def parse_interactive_output(self, output: str) -> ParsedOutput:
        """Last meaningful line of TUI output plus any ``codex resume`` id."""
        stripped = strip_ansi(output).replace("\r", "\n")
        match = _RESUME_ID_RE.search(stripped)
        lines = [
            line.strip() for line in stripped.split("\n")
            if is_useful_interactive_reply(line.strip())
            and not _RESUME_ID_RE.search(line)
        ]
        return ParsedOutput(
            text=lines[-1] if lines else "",
            thread_id=match.group(1) if match else None,
        )

    # ── Streaming ──

    def _stream_argv(self, request: StreamRequest) -> list[str]:
        cmd = [
            self._command,
            "-c", f'sandbox_mode="{self._sandbox_mode}"',
            "-c", f'approval_policy="{self._approval_policy}"',
        ]
        if request.model:
            cmd.extend(["-c", f'model="{request.model}"'])
        effort = normalize_reasoning_effort(request.thinking)
        if effort:
            cmd.extend(["-c", f'model_reasoning_effort="{effort}"'])
        cmd.append("exec")
        if request.thread_id:
            cmd.extend(["resume", request.thread_id])
        cmd.extend(["--json", "--skip-git-repo-check", "-"])
        return cmd

    async def stream_turn(
        self,
        request: StreamRequest,
        channel: ProgressChannel,
    ) -> StreamResult:
        """Run a turn via ``codex exec --json`` and stream its events."""
        cmd = self._stream_argv(request)
        try:
            # argv goes straight to exec, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.cwd or None,
                limit=_STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise TurnError(
                ErrorKind.CLI_MISSING,
                f"'{self._command}' CLI not found. Install Codex CLI first.",
            ) from exc

        logger.info(
            "Codex stream started pid=%s resume=%s cwd=%s",
            proc.pid, bool(request.thread_id), request.cwd,
        )
        stderr_task = asyncio.create_task(proc.stderr.read())
        thread_id = request.thread_id or None
        turn_texts: list[str] = []
        all_texts: list[str] = []
        saw_turn = False
        failure: ErrorEvent | None = None
        try:
            if proc.stdin is not None:
                proc.stdin.write(request.prompt.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()

            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text.startswith("{"):
                    continue
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON codex line: %.200s", text)
                    continue
                if not isinstance(raw, dict):
                    continue
                if raw.get("type") == "turn.started":
                    saw_turn = True
                for event in normalize_thread_event(raw, cwd=request.cwd):
                    if isinstance(event, SessionEvent) and event.thread_id:
                        thread_id = event.thread_id
                    elif isinstance(event, OutputTextEvent):
                        all_texts.append(event.text)
                        if saw_turn:
                            turn_texts.append(event.text)
                    elif isinstance(event, ErrorEvent):
                        failure = event
                    await channel.emit(event)

            await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        finally:
            if proc.returncode is None:
                await self._stop(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        texts = turn_texts or all_texts
        reply = texts[-1].strip() if texts else ""
        if failure is not None and not reply:
            raise TurnError(ErrorKind(failure.kind), failure.message, stderr=stderr)
        if proc.returncode != 0 and not reply:
            kind = classify_error(proc.returncode, stderr)
            raise TurnError(
                kind,
                f"Codex failed (rc={proc.returncode}): {stderr.strip()}",
                stderr=stderr,
            )
        if proc.returncode != 0:
            logger.warning(
                "Codex exited rc=%s after producing a reply; keeping the reply",
                proc.returncode,
            )
        return StreamResult(text=reply, thread_id=thread_id)

    @staticmethod
    async def _stop(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass
