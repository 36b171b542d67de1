"""Tests for the claude and gemini providers and shared provider helpers."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from chatrelay.adapters.event_bus import ProgressChannel
from chatrelay.adapters.events import OutputTextEvent, SessionEvent, ToolActivityEvent
from chatrelay.engine.errors import ErrorKind, TurnCancelledError, TurnError
from chatrelay.engine.providers.base import (
    StreamRequest,
    run_with_limits,
    strip_ansi,
)
from chatrelay.engine.providers.claude_provider import ClaudeProvider, sanitize_session_id
from chatrelay.engine.providers.gemini_provider import GeminiProvider, normalize_error_text
from chatrelay.engine.supervisor import CancelToken

CLAUDE_SID = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"


def _claude(**kwargs) -> ClaudeProvider:
    with patch("shutil.which", return_value=None):
        return ClaudeProvider(**kwargs)


def _gemini(**kwargs) -> GeminiProvider:
    with patch("shutil.which", return_value=None):
        return GeminiProvider(**kwargs)


# ── Shared helpers ──


def test_strip_ansi():
    assert strip_ansi("\x1b[1;32mgreen\x1b[0m \x1b]0;title\x07done") == "green done"


def test_is_available_uses_which():
    provider = _gemini()
    with patch("shutil.which", return_value="/usr/bin/gemini"):
        assert provider.is_available() is True
    with patch("shutil.which", return_value=None):
        assert provider.is_available() is False


@pytest.mark.asyncio
async def test_run_with_limits_timeout():
    with pytest.raises(TurnError) as exc_info:
        await run_with_limits(asyncio.sleep(5), timeout=0.05, cancel=None, agent_name="claude")
    assert exc_info.value.kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_run_with_limits_cancel():
    cancel = CancelToken()
    asyncio.get_running_loop().call_later(0.05, cancel.cancel, "user")
    with pytest.raises(TurnCancelledError) as exc_info:
        await run_with_limits(asyncio.sleep(5), timeout=10, cancel=cancel, agent_name="claude")
    assert exc_info.value.reason == "user"


@pytest.mark.asyncio
async def test_run_with_limits_returns_result():
    async def _work():
        return "reply"

    assert await run_with_limits(_work(), timeout=1, cancel=CancelToken(), agent_name="x") == "reply"


# ── Claude ──


def test_sanitize_session_id():
    assert sanitize_session_id(f" '{CLAUDE_SID}'\n") == CLAUDE_SID
    assert sanitize_session_id("abc; rm -rf /") is None
    assert sanitize_session_id(None) is None


def test_claude_build_command():
    command = _claude().build_command(thread_id=CLAUDE_SID, model="claude-sonnet-4-5")
    assert command.startswith('claude -p "$PROMPT" --output-format json --dangerously-skip-permissions')
    assert "--model claude-sonnet-4-5" in command
    assert command.endswith(f"--resume {CLAUDE_SID}")
    assert "--resume" not in _claude().build_command(thread_id="not-an-id")


def test_claude_parse_output():
    output = "Loading...\n" + json.dumps({
        "type": "result",
        "result": "All tests pass.",
        "session_id": CLAUDE_SID,
    })
    parsed = _claude().parse_output(output)
    assert parsed.text == "All tests pass."
    assert parsed.thread_id == CLAUDE_SID
    assert parsed.saw_json is True

    structured = _claude().parse_output(json.dumps({"structured_output": {"ok": True}}))
    assert json.loads(structured.text) == {"ok": True}

    plain = _claude().parse_output("not json at all")
    assert plain.text == "not json at all"
    assert plain.saw_json is False


@pytest.mark.asyncio
async def test_claude_stream_turn_with_sdk():
    messages = [
        SimpleNamespace(subtype="init", data={"session_id": CLAUDE_SID}),
        SimpleNamespace(content=[SimpleNamespace(name="Bash", input={"command": "ls"})]),
        SimpleNamespace(content=[SimpleNamespace(text="Looking around.")]),
        SimpleNamespace(result="Here is the summary.", is_error=False, session_id=CLAUDE_SID),
    ]
    seen_options = []

    async def _fake_query(*, prompt, options):
        seen_options.append(options)
        for message in messages:
            yield message

    channel = ProgressChannel()
    with patch("claude_agent_sdk.query", _fake_query):
        result = await _claude().stream_turn(
            StreamRequest(prompt="summarize", cwd="/w", model="claude-sonnet-4-5"), channel,
        )

    assert result.text == "Here is the summary."
    assert result.thread_id == CLAUDE_SID
    assert seen_options[0].cwd == "/w"
    assert seen_options[0].model == "claude-sonnet-4-5"
    kinds = [type(e) for e in channel.events]
    assert SessionEvent in kinds
    assert ToolActivityEvent in kinds
    assert OutputTextEvent in kinds
    # one session event, not one per message
    assert kinds.count(SessionEvent) == 1


@pytest.mark.asyncio
async def test_claude_stream_turn_error_result():
    async def _fake_query(*, prompt, options):
        yield SimpleNamespace(result="No conversation found with session ID", is_error=True)

    with patch("claude_agent_sdk.query", _fake_query):
        with pytest.raises(TurnError) as exc_info:
            await _claude().stream_turn(
                StreamRequest(prompt="x", cwd="/w", thread_id=CLAUDE_SID), ProgressChannel(),
            )
    assert exc_info.value.kind is ErrorKind.SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_claude_stream_turn_wraps_sdk_failures():
    async def _fake_query(*, prompt, options):
        raise RuntimeError("Claude Code CLI not found at /usr/local/bin/claude")
        yield  # pragma: no cover

    with patch("claude_agent_sdk.query", _fake_query):
        with pytest.raises(TurnError) as exc_info:
            await _claude().stream_turn(StreamRequest(prompt="x", cwd="/w"), ProgressChannel())
    assert exc_info.value.kind is ErrorKind.CLI_MISSING
    assert "Claude failed" in str(exc_info.value)


# ── Gemini ──


def test_gemini_build_command():
    command = _gemini().build_command(thread_id="7", model="gemini-2.5-pro")
    assert command == (
        'gemini -p "$PROMPT" --output-format json --approval-mode default '
        "--model gemini-2.5-pro --resume 7"
    )


def test_gemini_parse_output():
    output = "Loaded cached credentials.\n" + json.dumps({
        "response": "Hello from Gemini!",
        "stats": {"tokens": 100},
    })
    parsed = _gemini().parse_output(output)
    assert parsed.text == "Hello from Gemini!"
    assert parsed.saw_json is True
    assert parsed.thread_id is None


def test_gemini_parse_output_error_payload():
    parsed = _gemini().parse_output(json.dumps({"error": {"message": "quota exceeded"}}))
    assert parsed.text == "quota exceeded"


def test_gemini_normalize_error_text():
    assert normalize_error_text(
        'Error: {"error": {"code": 429, "message": "Resource has been exhausted"}}'
    ) == "Resource has been exhausted"
    assert normalize_error_text(
        "Attempt 1 failed\nRequest failed with status 503\nmore"
    ) == "Request failed with status 503"
    assert normalize_error_text("") == ""


def test_gemini_session_list():
    provider = _gemini()
    output = (
        "Available sessions for this project (2):\n"
        "  1. First prompt (2 hours ago) [1a2b3c4d-0000-4000-8000-000000000001]\n"
        "  2. Second prompt (just now) [1a2b3c4d-0000-4000-8000-000000000002]\n"
    )
    assert provider.list_sessions_command() == "gemini --list-sessions"
    assert provider.parse_session_list(output) == "1a2b3c4d-0000-4000-8000-000000000002"
    assert provider.parse_session_list("No sessions found.") is None
