"""Spawns the worker subprocess and relays its output to the event loop.

A daemon reader thread blocks on the worker's stdout and hands every line,
and finally the exit code, to a ``dispatch`` callable — normally
``loop.call_soon_threadsafe`` — so that all orchestrator state is only ever
touched from the event-loop thread.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]
Dispatch = Callable[..., object]

_KILL_WAIT = 3  # seconds


def default_worker_command(chunk_size: int | None = None, timeout: float | None = None) -> list[str]:
    """Command line that runs :mod:`shuttle.worker` under this interpreter."""
    command = [sys.executable, "-u", "-m", "shuttle.worker"]
    if chunk_size:
        command += ["--chunk-size", str(chunk_size)]
    if timeout:
        command += ["--timeout", str(timeout)]
    return command


class WorkerSpawnError(Exception):
    """Raised when the worker executable cannot be started."""


class WorkerProcess:
    """Handle to one running worker subprocess."""

    def __init__(
        self,
        command: Sequence[str],
        on_line: LineCallback,
        on_exit: ExitCallback,
        dispatch: Dispatch,
    ) -> None:
        """Start the worker immediately.

        Args:
            command: argv of the worker.
            on_line: Called (via *dispatch*) with each stdout line, newline stripped.
            on_exit: Called (via *dispatch*) once with the process exit code.
            dispatch: Thread-safe scheduler, e.g. ``loop.call_soon_threadsafe``.

        Raises:
            WorkerSpawnError: The process could not be started.
        """
        self._on_line = on_line
        self._on_exit = on_exit
        self._dispatch = dispatch
        try:
            self._proc = subprocess.Popen(
                list(command),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise WorkerSpawnError(f"Cannot start worker {command[0]!r}: {exc}") from exc

        logger.debug("Worker spawned (pid %d)", self._proc.pid)
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"worker-reader-{self._proc.pid}",
            daemon=True,
        )
        self._reader.start()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def _read_loop(self) -> None:
        """Forward stdout lines until EOF, then report the exit code."""
        assert self._proc.stdout is not None
        for line in self._proc.stdout:
            self._dispatch(self._on_line, line.rstrip("\r\n"))
        code = self._proc.wait()
        logger.debug("Worker %d exited with code %d", self._proc.pid, code)
        self._dispatch(self._on_exit, code)

    def send(self, line: str) -> bool:
        """Write one line to the worker's stdin; return False if the pipe is gone."""
        stdin = self._proc.stdin
        if stdin is None or stdin.closed:
            return False
        try:
            stdin.write(line + "\n")
            stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            logger.warning("Could not write to worker %d: %s", self._proc.pid, exc)
            return False
        return True

    def kill(self) -> None:
        """Send SIGTERM and return at once.

        The reader thread reports the exit.  A worker still alive after
        ``_KILL_WAIT`` seconds is sent SIGKILL from a timer thread.
        """
        if self._proc.poll() is not None:
            return
        self._proc.terminate()
        logger.debug("Worker %d terminated", self._proc.pid)
        escalate = threading.Timer(_KILL_WAIT, self._force_kill)
        escalate.daemon = True
        escalate.start()

    def _force_kill(self) -> None:
        if self._proc.poll() is None:
            logger.warning("Worker %d ignored SIGTERM; killing", self._proc.pid)
            self._proc.kill()
