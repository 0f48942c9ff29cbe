"""Tests for shuttle/worker_process.py — subprocess spawning and line relay."""

from __future__ import annotations

import signal
import sys
import threading
import time

import pytest

from shuttle.worker_process import WorkerProcess, WorkerSpawnError, default_worker_command

ECHO_SCRIPT = """
import sys
for line in sys.stdin:
    line = line.strip()
    print("echo " + line, flush=True)
    if line == "exit":
        sys.exit(3)
"""

STUBBORN_SCRIPT = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(60)
"""


def _direct(callback, *args) -> None:
    callback(*args)


class TestWorkerProcess:
    def test_relays_lines_then_exit_code(self) -> None:
        lines: list[str] = []
        codes: list[int] = []
        done = threading.Event()

        def on_exit(code: int) -> None:
            codes.append(code)
            done.set()

        proc = WorkerProcess([sys.executable, "-c", ECHO_SCRIPT], lines.append, on_exit, _direct)
        assert proc.send("hello") is True
        assert proc.send("exit") is True

        assert done.wait(timeout=10)
        assert lines == ["echo hello", "echo exit"]
        assert codes == [3]

    def test_kill_reports_exit(self) -> None:
        done = threading.Event()
        proc = WorkerProcess([sys.executable, "-c", ECHO_SCRIPT], lambda line: None, lambda code: done.set(), _direct)
        proc.kill()
        assert done.wait(timeout=10)
        proc.kill()  # already gone

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_kill_does_not_wait_for_stubborn_worker(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A worker ignoring SIGTERM is killed later without blocking the caller."""
        monkeypatch.setattr("shuttle.worker_process._KILL_WAIT", 0.5)
        ready = threading.Event()
        done = threading.Event()
        codes: list[int] = []

        def on_exit(code: int) -> None:
            codes.append(code)
            done.set()

        proc = WorkerProcess([sys.executable, "-c", STUBBORN_SCRIPT], lambda line: ready.set(), on_exit, _direct)
        assert ready.wait(timeout=10)

        started = time.monotonic()
        proc.kill()
        assert time.monotonic() - started < 0.5

        assert done.wait(timeout=10)
        assert codes == [-signal.SIGKILL]

    def test_missing_executable(self, tmp_path) -> None:
        with pytest.raises(WorkerSpawnError, match="Cannot start worker"):
            WorkerProcess([str(tmp_path / "no-such-worker")], lambda line: None, lambda code: None, _direct)


def test_default_worker_command() -> None:
    command = default_worker_command(chunk_size=4096, timeout=5)
    assert command[:4] == [sys.executable, "-u", "-m", "shuttle.worker"]
    assert command[4:] == ["--chunk-size", "4096", "--timeout", "5"]
