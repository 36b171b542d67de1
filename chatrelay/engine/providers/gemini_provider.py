"""Gemini CLI provider.

Batch only: ``gemini -p --output-format json`` under the supervisor.
The JSON result carries no session id, so new sessions are found with
``gemini --list-sessions``.
"""
from __future__ import annotations

import json
import logging
import re
import shlex

from .base import PROMPT_EXPRESSION, AgentProvider, ParsedOutput, Transport, strip_ansi

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"\[([0-9a-f-]{16,})\]", flags=re.IGNORECASE)
_CAPACITY_RE = re.compile(
    r'"message"\s*:\s*"([^"]+)"|No capacity available for model ([^\s"]+)',
    flags=re.IGNORECASE,
)
_PREFERRED_ERROR_RE = re.compile(
    r"RESOURCE_EXHAUSTED|rateLimitExceeded|permission|approval", flags=re.IGNORECASE,
)
_STATUS_ERROR_RE = re.compile(r"failed with status \d+", flags=re.IGNORECASE)


def normalize_error_text(value: str) -> str:
    """Pick the most informative line out of gemini's error output."""
    trimmed = strip_ansi(value).strip()
    if not trimmed:
        return ""
    capacity = _CAPACITY_RE.search(trimmed)
    if capacity:
        return capacity.group(1) or f"No capacity available for model {capacity.group(2)}"
    lines = [line.strip() for line in trimmed.splitlines() if line.strip()]
    for pattern in (_PREFERRED_ERROR_RE, _STATUS_ERROR_RE):
        for line in lines:
            if pattern.search(line):
                return line
    return lines[0] if lines else trimmed


class GeminiProvider(AgentProvider):
    """Provider backed by the Gemini CLI."""

    transport = Transport.BATCH
    needs_pty = True

    def __init__(self, command: str = "gemini", approval_mode: str = "default") -> None:
        super().__init__(command, "gemini")
        self._approval_mode = approval_mode

    @property
    def name(self) -> str:
        return "gemini"

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
            "--approval-mode", shlex.quote(self._approval_mode),
        ]
        if model:
            parts.extend(["--model", shlex.quote(model)])
        if thread_id:
            parts.extend(["--resume", shlex.quote(thread_id)])
        return " ".join(parts)

    def parse_output(self, output: str) -> ParsedOutput:
        trimmed = strip_ansi(output).strip()
        if not trimmed:
            return ParsedOutput()
        payload = None
        try:
            payload = json.loads(trimmed)
        except json.JSONDecodeError:
            for line in reversed(trimmed.splitlines()):
                line = line.strip()
                if not line.startswith("{"):
                    continue
                try:
                    payload = json.loads(line)
                    break
                except json.JSONDecodeError:
                    continue
        if not isinstance(payload, dict):
            return ParsedOutput(text=normalize_error_text(trimmed))
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return ParsedOutput(text=str(error["message"]), saw_json=True)
        response = payload.get("response")
        return ParsedOutput(
            text=response.strip() if isinstance(response, str) else "",
            saw_json=True,
        )

    def list_sessions_command(self) -> str | None:
        return f"{self._quoted_command()} --list-sessions"

    def parse_session_list(self, output: str) -> str | None:
        """The last (newest) session id in ``--list-sessions`` output."""
        last_id = None
        for line in (output or "").splitlines():
            match = _SESSION_ID_RE.search(line)
            if match:
                last_id = match.group(1)
        return last_id
