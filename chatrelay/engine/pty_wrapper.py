"""Run a shell command under a pseudo-terminal.

Executed by file path as ``python pty_wrapper.py <command>``. The wrapper
owns the pty master, copies child output to its own stdout and its own
stdin into the pty, forwards termination signals to the child's process
group, and exits with the child's status (128+N when killed by signal N).

The child runs in its own session, so it is out of reach of signals sent
to the wrapper's group. Its pid is announced as the first stderr line
(``CHILD_PID_PREFIX<pid>``) so the supervisor can signal both groups.

Stdlib only: this file runs in a fresh interpreter without the package
on sys.path.
"""
from __future__ import annotations

import os
import pty
import select
import signal
import sys

STDIN_FILENO = 0
STDOUT_FILENO = 1
_CHUNK = 4096
# Keep in sync with supervisor.CHILD_PID_PREFIX.
CHILD_PID_PREFIX = "chatrelay-pty-child:"
_FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def _write_all(fd: int, data: bytes) -> None:
    while data:
        written = os.write(fd, data)
        data = data[written:]


def _copy(master_fd: int) -> None:
    read_fds = [master_fd, STDIN_FILENO]
    while True:
        ready, _, _ = select.select(read_fds, [], [])
        if master_fd in ready:
            try:
                data = os.read(master_fd, _CHUNK)
            except OSError:
                # EIO once the slave side is closed
                data = b""
            if not data:
                return
            _write_all(STDOUT_FILENO, data)
        if STDIN_FILENO in ready:
            data = os.read(STDIN_FILENO, _CHUNK)
            if not data:
                read_fds.remove(STDIN_FILENO)
            else:
                _write_all(master_fd, data)


def main(argv: list[str]) -> int:
    if len(argv) != 2:
        sys.stderr.write("usage: pty_wrapper.py <command>\n")
        return 2

    pid, master_fd = pty.fork()
    if pid == 0:
        try:
            os.execvp("bash", ["bash", "-lc", argv[1]])
        except OSError as exc:
            os.write(2, f"pty_wrapper: {exc}\n".encode())
        os._exit(127)

    os.write(2, f"{CHILD_PID_PREFIX}{pid}\n".encode())

    def _forward(signum, _frame):
        try:
            # The child is a session leader, so its pgid is its pid.
            os.killpg(pid, signum)
        except OSError:
            pass

    for signum in _FORWARDED_SIGNALS:
        signal.signal(signum, _forward)

    try:
        _copy(master_fd)
    except BrokenPipeError:
        pass  # supervisor stopped reading
    finally:
        os.close(master_fd)

    _, status = os.waitpid(pid, 0)
    code = os.waitstatus_to_exitcode(status)
    return code if code >= 0 else 128 - code


if __name__ == "__main__":
    sys.exit(main(sys.argv))
