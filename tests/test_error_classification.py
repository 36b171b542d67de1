"""Tests for error classification and the error hierarchy."""
from __future__ import annotations

import pytest

from chatrelay.engine.errors import (
    AmbiguousSessionError,
    ErrorKind,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
    StaleSessionError,
    StopReason,
    TurnError,
    classify_error,
)


@pytest.mark.parametrize(
    ("returncode", "text", "expected"),
    [
        (127, "", ErrorKind.CLI_MISSING),
        (1, "bash: codex: command not found", ErrorKind.CLI_MISSING),
        (1, "spawn codex ENOENT", ErrorKind.CLI_MISSING),
        (1, "Error: thread not found: 019a...", ErrorKind.SESSION_NOT_FOUND),
        (1, "No conversation found with session ID", ErrorKind.SESSION_NOT_FOUND),
        (1, "This action requires approval", ErrorKind.APPROVAL_REQUIRED),
        (1, "sandbox: Operation not permitted", ErrorKind.SANDBOX_DENIED),
        (1, "open /etc/shadow: Permission denied", ErrorKind.SANDBOX_DENIED),
        (1, "request timed out after 60s", ErrorKind.TIMEOUT),
        (1, "something else broke", ErrorKind.UNKNOWN),
        (None, "", ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(returncode, text, expected):
    assert classify_error(returncode, text) is expected


def test_classify_error_flags_take_precedence():
    assert classify_error(1, "session not found", timed_out=True) is ErrorKind.TIMEOUT
    assert classify_error(0, "", spawn_failed=True) is ErrorKind.CLI_MISSING


def test_classify_error_is_case_insensitive():
    assert classify_error(2, "SESSION NOT FOUND") is ErrorKind.SESSION_NOT_FOUND


def test_turn_error_from_process_exit():
    exc = ProcessExitError(1, command="codex exec", stdout="", stderr="Error: session not found")
    turn_error = TurnError.from_process_error(exc, "codex")
    assert turn_error.kind is ErrorKind.SESSION_NOT_FOUND
    assert "codex failed" in str(turn_error)
    assert turn_error.stderr == "Error: session not found"


def test_turn_error_from_timeout_and_spawn():
    timeout = ProcessTimeoutError(5.0, command="gemini", stdout="partial")
    assert timeout.stop_reason is StopReason.TIMEOUT
    assert TurnError.from_process_error(timeout).kind is ErrorKind.TIMEOUT

    spawn = ProcessSpawnError("gemini", FileNotFoundError("bash"))
    assert TurnError.from_process_error(spawn).kind is ErrorKind.CLI_MISSING


def test_process_exit_error_reports_signal():
    exc = ProcessExitError(-9)
    assert exc.signal == 9
    assert "SIGKILL" in str(exc)


def test_session_errors_carry_kind_and_details():
    ambiguous = AmbiguousSessionError(["a", "b"])
    assert ambiguous.kind is ErrorKind.AMBIGUOUS_RESOLUTION
    assert ambiguous.candidate_ids == ["a", "b"]

    stale = StaleSessionError("id-1", "/old", "/new")
    assert stale.kind is ErrorKind.STALE_SESSION
    assert "/old" in str(stale) and "/new" in str(stale)
