"""Exception hierarchy for turn orchestration.

Process-level failures carry whatever output was captured before the
child went away. Turn-level failures carry an ErrorKind so callers can
render an actionable message without parsing text.
"""
from __future__ import annotations

import enum
import signal as _signal


class ErrorKind(str, enum.Enum):
    """Classification of a failed turn."""
    CLI_MISSING = "cli_missing"
    SESSION_NOT_FOUND = "session_not_found"
    APPROVAL_REQUIRED = "approval_required"
    SANDBOX_DENIED = "sandbox_denied"
    TIMEOUT = "timeout"
    AMBIGUOUS_RESOLUTION = "ambiguous_resolution"
    STALE_SESSION = "stale_session"
    UNKNOWN = "unknown"


class StopReason(str, enum.Enum):
    """Why the supervisor stopped (or did not stop) a child process."""
    TIMEOUT = "timeout"
    ABORT = "abort"
    MAX_BUFFER = "max_buffer"
    NATURAL_EXIT = "natural_exit"


class OrchestrationError(Exception):
    """Base exception for all chatrelay errors."""


# ── Process supervision ──────────────────────────────────────────


class ProcessError(OrchestrationError):
    """A supervised process did not finish cleanly."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stdout: str = "",
        stderr: str = "",
        stop_reason: StopReason = StopReason.NATURAL_EXIT,
        returncode: int | None = None,
        signal: int | None = None,
    ):
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.stop_reason = stop_reason
        self.returncode = returncode
        self.signal = signal
        super().__init__(message)


class ProcessSpawnError(ProcessError):
    """The process could not be started at all."""
    def __init__(self, command: str, reason: OSError):
        self.reason = reason
        super().__init__(
            f"Failed to spawn process: {reason}",
            command=command,
        )


class ProcessTimeoutError(ProcessError):
    """Process was stopped because it outlived its time budget."""
    def __init__(self, timeout_seconds: float, **kwargs):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Process timed out after {timeout_seconds}s",
            stop_reason=StopReason.TIMEOUT,
            **kwargs,
        )


class ProcessAbortedError(ProcessError):
    """Process was stopped by its cancellation token."""
    def __init__(self, abort_reason: str, **kwargs):
        self.abort_reason = abort_reason
        super().__init__(
            f"Process aborted ({abort_reason})",
            stop_reason=StopReason.ABORT,
            **kwargs,
        )


class MaxBufferExceededError(ProcessError):
    """Process produced more output than the configured limit."""
    def __init__(self, max_buffer: int, **kwargs):
        self.max_buffer = max_buffer
        super().__init__(
            f"Process output exceeded max buffer of {max_buffer} bytes",
            stop_reason=StopReason.MAX_BUFFER,
            **kwargs,
        )


class ProcessExitError(ProcessError):
    """Process exited on its own with a non-zero code or a signal."""
    def __init__(self, returncode: int, **kwargs):
        signum = -returncode if returncode < 0 else None
        if signum is not None:
            try:
                detail = f"killed by {_signal.Signals(signum).name}"
            except ValueError:
                detail = f"killed by signal {signum}"
        else:
            detail = f"exit code {returncode}"
        super().__init__(
            f"Process failed ({detail})",
            returncode=returncode,
            signal=signum,
            **kwargs,
        )


# ── Turn orchestration ───────────────────────────────────────────


class TurnError(OrchestrationError):
    """A turn failed; ``kind`` says how."""
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
    ):
        self.kind = kind
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)

    @classmethod
    def from_process_error(
        cls, exc: ProcessError, agent_name: str = "agent",
    ) -> TurnError:
        kind = classify_error(
            exc.returncode,
            f"{exc.stderr}\n{exc.stdout}\n{exc}",
            timed_out=exc.stop_reason is StopReason.TIMEOUT,
            spawn_failed=isinstance(exc, ProcessSpawnError),
        )
        return cls(
            kind,
            f"{agent_name} failed: {exc}",
            stdout=exc.stdout,
            stderr=exc.stderr,
        )


class AmbiguousSessionError(TurnError):
    """More than one new session could belong to this turn."""
    def __init__(self, candidate_ids: list[str]):
        self.candidate_ids = candidate_ids
        super().__init__(
            ErrorKind.AMBIGUOUS_RESOLUTION,
            "Could not safely associate the new session: "
            f"{len(candidate_ids)} candidate sessions were created. "
            "Retry, or resume the last known session explicitly.",
        )


class StaleSessionError(TurnError):
    """The stored session belongs to a different working directory."""
    def __init__(self, thread_id: str, session_cwd: str, project_cwd: str):
        self.thread_id = thread_id
        self.session_cwd = session_cwd
        self.project_cwd = project_cwd
        super().__init__(
            ErrorKind.STALE_SESSION,
            f"Session {thread_id} was started in {session_cwd}, "
            f"but the current project is {project_cwd}. "
            "The stale session was cleared; send the message again "
            "to start a new one.",
        )


class SessionNotFoundError(TurnError):
    """The stored session id no longer exists locally."""
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(
            ErrorKind.SESSION_NOT_FOUND,
            f"Could not locate active session {thread_id}. "
            "Resume another session or reset this conversation to start a new one.",
        )


class SessionCreationError(TurnError):
    """A new-session turn finished without a visible session."""
    def __init__(self, agent_name: str, detail: str = ""):
        self.agent_name = agent_name
        message = f"{agent_name} could not create a visible session."
        if detail:
            message = f"{message} {detail}"
        super().__init__(ErrorKind.SESSION_NOT_FOUND, message)


class TurnCancelledError(TurnError):
    """The caller cancelled a streaming turn."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(ErrorKind.UNKNOWN, f"Turn cancelled ({reason})")


class WorkingDirectoryError(TurnError):
    """The resolved project directory is missing or not a directory."""
    def __init__(self, cwd: str):
        self.cwd = cwd
        super().__init__(
            ErrorKind.UNKNOWN,
            f"Project directory does not exist or is not a directory: {cwd}",
        )


# ── Classification ───────────────────────────────────────────────

_CLI_MISSING_PATTERNS = (
    "enoent",
    "command not found",
    "no such file or directory",
    "cannot find package",
    "failed to spawn",
    "not installed",
    "cli not found",
)
_SESSION_NOT_FOUND_PATTERNS = (
    "thread not found",
    "session not found",
    "could not find thread",
    "could not find session",
    "no such session",
    "no conversation found",
)
_APPROVAL_PATTERNS = ("approval",)
_SANDBOX_PATTERNS = (
    "sandbox",
    "operation not permitted",
    "permission denied",
)
_TIMEOUT_PATTERNS = ("timed out", "etimedout", "timeout exceeded")


def classify_error(
    returncode: int | None,
    text: str,
    *,
    timed_out: bool = False,
    spawn_failed: bool = False,
) -> ErrorKind:
    """Map an exit code plus captured output to an ErrorKind.

    Pure heuristics. Anything unrecognised is UNKNOWN.
    """
    lowered = (text or "").lower()
    if spawn_failed or returncode == 127:
        return ErrorKind.CLI_MISSING
    if timed_out or any(p in lowered for p in _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(p in lowered for p in _CLI_MISSING_PATTERNS):
        return ErrorKind.CLI_MISSING
    if any(p in lowered for p in _SESSION_NOT_FOUND_PATTERNS):
        return ErrorKind.SESSION_NOT_FOUND
    if any(p in lowered for p in _APPROVAL_PATTERNS):
        return ErrorKind.APPROVAL_REQUIRED
    if any(p in lowered for p in _SANDBOX_PATTERNS):
        return ErrorKind.SANDBOX_DENIED
    return ErrorKind.UNKNOWN
