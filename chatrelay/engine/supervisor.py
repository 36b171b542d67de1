"""PTY process supervisor.

Runs a shell command under a pseudo-terminal, collects its output, and
stops it on timeout, cancellation, or runaway output. Stops escalate
through signals sent to the wrapper's process group and to the group of
the shell inside the pty, so everything the command launched goes down
together.

Some agent CLIs query the terminal (cursor position, device attributes,
colours) and block until they get an answer. The supervisor answers a
fixed set of those queries with canned replies, once each.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from .errors import (
    MaxBufferExceededError,
    ProcessAbortedError,
    ProcessError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
    StopReason,
)

logger = logging.getLogger(__name__)

PTY_WRAPPER = Path(__file__).with_name("pty_wrapper.py")
TERMINAL_TYPE = "xterm-256color"
DEFAULT_MAX_BUFFER = 10 * 1024 * 1024
QUERY_WINDOW_BYTES = 8 * 1024
_READ_CHUNK = 64 * 1024
# First stderr line of the pty wrapper; keep in sync with pty_wrapper.py.
CHILD_PID_PREFIX = b"chatrelay-pty-child:"
_MARKER_MAX = 64

# Abort reason meaning "the work is basically done": the child gets a
# SIGINT first so it can flush and exit on its own.
ABORT_TURN_COMPLETE = "turn_complete"
GRACEFUL_ABORT_REASONS = frozenset({ABORT_TURN_COMPLETE})

_DEFAULT_ESCALATION = ((signal.SIGTERM, 1.0), (signal.SIGKILL, 0.0))
_GRACEFUL_ESCALATION = (
    (signal.SIGINT, 0.4),
    (signal.SIGTERM, 1.0),
    (signal.SIGKILL, 0.0),
)

# (query, reply) pairs for the terminal-emulation shim.
TERMINAL_QUERY_REPLIES: dict[str, tuple[bytes, bytes]] = {
    "cursor_position": (b"\x1b[6n", b"\x1b[1;1R"),
    "device_attributes": (b"\x1b[c", b"\x1b[?1;2c"),
    "device_attributes_0": (b"\x1b[0c", b"\x1b[?1;2c"),
    "foreground_color": (
        b"\x1b]10;?",
        b"\x1b]10;rgb:ffff/ffff/ffff\x1b\\",
    ),
    "background_color": (
        b"\x1b]11;?",
        b"\x1b]11;rgb:0000/0000/0000\x1b\\",
    ),
    "keyboard_protocol": (b"\x1b[?u", b"\x1b[?0u"),
}


class CancelToken:
    """Turn-scoped cancellation signal.

    ``linked()`` returns a child token that is cancelled together with
    this one but can also be cancelled on its own.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancelToken] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"

    def linked(self) -> CancelToken:
        child = CancelToken()
        if self.cancelled:
            child.cancel(self._reason or "cancelled")
        else:
            self._children.append(child)
        return child


def build_pty_argv(command: str) -> list[str]:
    """argv that runs *command* with ``bash -lc`` inside a pty."""
    return [sys.executable, str(PTY_WRAPPER), command]


class _SupervisedRun:
    """State for one supervised process."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        command: str,
        *,
        timeout: float | None,
        max_buffer: int,
        answer_queries: bool,
        reports_child: bool = False,
    ) -> None:
        self.proc = proc
        self.command = command
        self.timeout = timeout
        self.max_buffer = max_buffer
        self.answer_queries = answer_queries
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.stop_reason: StopReason | None = None
        self.abort_reason = ""
        self._query_window = b""
        self._answered: set[str] = set()
        self._escalation: asyncio.Task | None = None
        # pgid of the shell inside the pty, once the wrapper announces it
        self.child_pgid: int | None = None
        self._awaiting_child = reports_child
        self._marker = b""

    # ── Stop handling ──

    def request_stop(self, reason: StopReason, abort_reason: str = "") -> None:
        """Record the first stop reason and start signal escalation."""
        if self.stop_reason is not None:
            return
        self.stop_reason = reason
        self.abort_reason = abort_reason
        graceful = (
            reason is StopReason.ABORT
            and abort_reason in GRACEFUL_ABORT_REASONS
        )
        logger.info(
            "Stopping pid=%s reason=%s%s",
            self.proc.pid,
            reason.value,
            f" ({abort_reason})" if abort_reason else "",
        )
        steps = _GRACEFUL_ESCALATION if graceful else _DEFAULT_ESCALATION
        self._escalation = asyncio.create_task(self._escalate(steps))

    async def _escalate(self, steps) -> None:
        for sig, grace in steps:
            if self.proc.returncode is not None:
                return
            self.send_signal(sig)
            if grace:
                await asyncio.sleep(grace)

    def send_signal(self, sig: int) -> None:
        """Signal the wrapper's group and, under a pty, the shell's group."""
        self._signal_child_group(sig)
        if self.proc.returncode is not None:
            return
        try:
            os.killpg(self.proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group already reaped and pid reused; fall back to the wrapper.
            try:
                self.proc.send_signal(sig)
            except ProcessLookupError:
                pass

    def _signal_child_group(self, sig: int) -> None:
        if self.child_pgid is None:
            return
        try:
            os.killpg(self.child_pgid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    async def _timeout_watch(self) -> None:
        await asyncio.sleep(self.timeout)
        if self.proc.returncode is None:
            self.request_stop(StopReason.TIMEOUT)

    async def _cancel_watch(self, cancel: CancelToken) -> None:
        reason = await cancel.wait()
        self.request_stop(StopReason.ABORT, reason)

    # ── Output ──

    async def _pump(self, stream: asyncio.StreamReader, buf: bytearray, is_stdout: bool) -> None:
        while True:
            raw = await stream.read(_READ_CHUNK)
            chunk = raw
            if not is_stdout and self._awaiting_child:
                chunk = self._take_child_pid(raw)
            if not chunk:
                if not raw:
                    return
                continue
            if self.stop_reason is StopReason.MAX_BUFFER:
                continue  # keep draining so the child never blocks on a full pipe
            buf.extend(chunk)
            if is_stdout and self.answer_queries:
                self._answer_terminal_queries(chunk)
            if len(buf) > self.max_buffer:
                self.request_stop(StopReason.MAX_BUFFER)

    def _take_child_pid(self, chunk: bytes) -> bytes:
        """Strip the wrapper's child-pid line off the front of stderr.

        Returns whatever stderr bytes are left to record. Anything that
        does not parse as the marker is passed through untouched.
        """
        self._marker += chunk
        line, newline, rest = self._marker.partition(b"\n")
        if not newline and chunk and len(self._marker) < _MARKER_MAX:
            return b""
        self._awaiting_child = False
        pending, self._marker = self._marker, b""
        if not newline or not line.startswith(CHILD_PID_PREFIX):
            return pending
        try:
            self.child_pgid = int(line[len(CHILD_PID_PREFIX):])
        except ValueError:
            return pending
        logger.debug("pid=%s runs pty child pid=%s", self.proc.pid, self.child_pgid)
        return rest

    def _answer_terminal_queries(self, chunk: bytes) -> None:
        self._query_window = (self._query_window + chunk)[-QUERY_WINDOW_BYTES:]
        for name, (query, reply) in TERMINAL_QUERY_REPLIES.items():
            if name in self._answered or query not in self._query_window:
                continue
            self._answered.add(name)
            logger.debug("Answering terminal query %s for pid=%s", name, self.proc.pid)
            stdin = self.proc.stdin
            if stdin is None or stdin.is_closing():
                continue
            try:
                stdin.write(reply)
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("pty stdin closed before %s reply", name)

    # ── Main ──

    async def wait(self, cancel: CancelToken | None) -> str:
        watchers: list[asyncio.Task] = []
        if self.timeout is not None and self.timeout > 0:
            watchers.append(asyncio.create_task(self._timeout_watch()))
        if cancel is not None:
            if cancel.cancelled:
                self.request_stop(StopReason.ABORT, cancel.reason or "cancelled")
            else:
                watchers.append(asyncio.create_task(self._cancel_watch(cancel)))

        try:
            await asyncio.gather(
                self._pump(self.proc.stdout, self.stdout, True),
                self._pump(self.proc.stderr, self.stderr, False),
            )
            returncode = await self.proc.wait()
        finally:
            if self.proc.returncode is None:
                # Caller was cancelled mid-run; leave nothing behind.
                self.send_signal(signal.SIGKILL)
            elif self.stop_reason is not None:
                # The wrapper is gone but a shell ignoring TERM and HUP
                # can outlive it.
                self._signal_child_group(signal.SIGKILL)
            for task in watchers:
                task.cancel()
            if self._escalation is not None:
                self._escalation.cancel()
            if self.proc.stdin is not None and not self.proc.stdin.is_closing():
                self.proc.stdin.close()

        return self._outcome(returncode)

    def _outcome(self, returncode: int) -> str:
        stdout = self.stdout.decode("utf-8", errors="replace")
        stderr = self.stderr.decode("utf-8", errors="replace")
        details = dict(
            command=self.command,
            stdout=stdout,
            stderr=stderr,
            returncode=returncode,
            signal=-returncode if returncode < 0 else None,
        )
        if self.stop_reason is None:
            if returncode == 0:
                return stdout
            raise ProcessExitError(returncode, command=self.command, stdout=stdout, stderr=stderr)
        if self.stop_reason is StopReason.TIMEOUT:
            raise ProcessTimeoutError(self.timeout or 0.0, **details)
        if self.stop_reason is StopReason.MAX_BUFFER:
            raise MaxBufferExceededError(self.max_buffer, **details)
        raise ProcessAbortedError(self.abort_reason or "cancelled", **details)


class ProcessSupervisor:
    """Spawns and supervises agent processes."""

    def __init__(self, default_max_buffer: int = DEFAULT_MAX_BUFFER) -> None:
        self._default_max_buffer = default_max_buffer

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        max_buffer: int | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
        use_pty: bool = True,
    ) -> str:
        """Run *command* and return its stdout.

        Raises a ProcessError subclass carrying the partial stdout and
        stderr on timeout, abort, buffer overflow, non-zero exit or
        spawn failure.
        """
        argv = build_pty_argv(command) if use_pty else ["bash", "-lc", command]
        full_env = {**os.environ, "TERM": TERMINAL_TYPE, **(env or {})}
        limit = max_buffer if max_buffer is not None else self._default_max_buffer

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or None,
                env=full_env,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Spawn failed for %r: %s", argv[0], exc)
            raise ProcessSpawnError(command, exc) from exc

        logger.info(
            "Spawned pid=%s pty=%s cwd=%s timeout=%s",
            proc.pid, use_pty, cwd or ".", timeout,
        )
        run = _SupervisedRun(
            proc,
            command,
            timeout=timeout,
            max_buffer=limit,
            answer_queries=use_pty,
            reports_child=use_pty,
        )
        try:
            output = await run.wait(cancel)
        except ProcessError as exc:
            logger.info(
                "pid=%s ended with %s (stop=%s, %d bytes stdout)",
                proc.pid, type(exc).__name__, exc.stop_reason.value, len(exc.stdout),
            )
            raise
        logger.debug("pid=%s exited cleanly (%d bytes stdout)", proc.pid, len(output))
        return output
