"""Shared fakes for the Shuttle test-suite.

``FakeSFTP`` is an in-memory stand-in for ``paramiko.SFTPClient``;
``FakeScheduler`` is a manually advanced clock with ``call_later``; and
``FakeWorkerFactory`` records the worker handles the orchestrator spawns.
"""

from __future__ import annotations

import errno
import functools
import io
import json
import posixpath
import stat
from pathlib import Path

import paramiko
import pytest

from shuttle import protocol
from shuttle.config import ConfigManager

# ---------------------------------------------------------------------------
# In-memory SFTP
# ---------------------------------------------------------------------------


class _RemoteFile(io.BytesIO):
    """Buffer that lands in the fake tree when closed."""

    def __init__(self, sftp: "FakeSFTP", path: str) -> None:
        super().__init__()
        self._sftp = sftp
        self._path = path

    def close(self) -> None:
        if not self.closed:
            self._sftp.files[self._path] = self.getvalue()
        super().close()


class FakeSFTP:
    """Minimal in-memory SFTP server (stat/mkdir/rmdir/remove/listdir_attr/open)."""

    def __init__(self) -> None:
        self.dirs: dict[str, int] = {"/": 0o755}
        self.files: dict[str, bytes] = {}
        self.fail: set[tuple[str, str]] = set()  # (method, path) pairs that raise
        self.calls: list[tuple[str, str]] = []

    # helpers ------------------------------------------------------------

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(path) if path else path

    def _check(self, method: str, path: str) -> None:
        self.calls.append((method, path))
        if (method, path) in self.fail:
            raise OSError(errno.EACCES, f"Permission denied: {path}")

    def _exists(self, path: str) -> bool:
        return path in self.dirs or path in self.files

    def _require_parent(self, path: str) -> None:
        parent = posixpath.dirname(path) or "/"
        if parent not in self.dirs:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def tree(self) -> tuple[dict[str, int], dict[str, bytes]]:
        return dict(self.dirs), dict(self.files)

    def add_dir(self, path: str) -> None:
        parts = [p for p in path.split("/") if p]
        current = ""
        for part in parts:
            current = f"{current}/{part}"
            self.dirs.setdefault(current, 0o755)

    def add_file(self, path: str, data: bytes = b"") -> None:
        self.add_dir(posixpath.dirname(path))
        self.files[path] = data

    # SFTPClient API -----------------------------------------------------

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        path = self._norm(path)
        self._check("stat", path)
        attrs = paramiko.SFTPAttributes()
        if path in self.dirs:
            attrs.st_mode = stat.S_IFDIR | self.dirs[path]
            attrs.st_size = 0
        elif path in self.files:
            attrs.st_mode = stat.S_IFREG | 0o644
            attrs.st_size = len(self.files[path])
        else:
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        return attrs

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        path = self._norm(path)
        self._check("mkdir", path)
        if self._exists(path):
            raise OSError("Failure")
        self._require_parent(path)
        self.dirs[path] = mode

    def rmdir(self, path: str) -> None:
        path = self._norm(path)
        self._check("rmdir", path)
        if path not in self.dirs:
            if path in self.files:
                raise OSError("Failure")
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        prefix = path.rstrip("/") + "/"
        if any(p.startswith(prefix) for p in (*self.dirs, *self.files)):
            raise OSError("Failure")
        del self.dirs[path]

    def remove(self, path: str) -> None:
        path = self._norm(path)
        self._check("remove", path)
        if path in self.files:
            del self.files[path]
            return
        if path in self.dirs:
            raise OSError("Failure")
        raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def listdir_attr(self, path: str) -> list[paramiko.SFTPAttributes]:
        path = self._norm(path)
        self._check("listdir_attr", path)
        if path not in self.dirs:
            if path in self.files:
                raise OSError("Failure")
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        entries = []
        names = {".", ".."}
        for child in sorted((*self.dirs, *self.files)):
            if child != path and posixpath.dirname(child) == path:
                names.add(posixpath.basename(child))
        for name in sorted(names):
            child = posixpath.join(path, name)
            attrs = paramiko.SFTPAttributes()
            attrs.filename = name
            attrs.st_mode = stat.S_IFDIR | 0o755 if name in (".", "..") or child in self.dirs else stat.S_IFREG | 0o644
            entries.append(attrs)
        return entries

    def open(self, path: str, mode: str = "r") -> _RemoteFile:
        path = self._norm(path)
        self._check("open", path)
        if path in self.dirs:
            raise OSError("Failure")
        self._require_parent(path)
        return _RemoteFile(self, path)


@pytest.fixture()
def fake_sftp() -> FakeSFTP:
    return FakeSFTP()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, when: float, callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Deterministic stand-in for an asyncio loop."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback, *args) -> FakeTimer:
        timer = FakeTimer(self.now + delay, functools.partial(callback, *args))
        self.timers.append(timer)
        return timer

    def call_soon_threadsafe(self, callback, *args) -> None:
        callback(*args)

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        deadline = self.now + seconds
        while True:
            due = sorted((t for t in self.pending() if t.when <= deadline), key=lambda t: t.when)
            if not due:
                break
            timer = due[0]
            self.timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = deadline


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


# ---------------------------------------------------------------------------
# Worker handles
# ---------------------------------------------------------------------------


class FakeWorker:
    """Records lines sent by the orchestrator; lets tests play the worker."""

    def __init__(self, on_line, on_exit) -> None:
        self._on_line = on_line
        self._on_exit = on_exit
        self.sent: list[str] = []
        self.killed = False

    def send(self, line: str) -> bool:
        self.sent.append(line)
        return True

    def kill(self) -> None:
        self.killed = True

    def emit(self, *lines: str) -> None:
        for line in lines:
            self._on_line(line)

    def exit(self, code: int) -> None:
        self._on_exit(code)

    def handshake(self, host: str = "example.com", user: str = "deploy", method: str = "key") -> None:
        """Play the full startup dialogue up to ``1|Connected``."""
        self.emit(protocol.HOSTNAME_PROMPT, protocol.USERNAME_PROMPT, protocol.AUTH_METHOD_PROMPT)
        self.emit(protocol.PASSWORD_PROMPT if method == "password" else protocol.KEY_PROMPT)
        self.emit(f"1|Connected to {host} as {user}")


class FakeWorkerFactory:
    def __init__(self) -> None:
        self.workers: list[FakeWorker] = []

    def __call__(self, on_line, on_exit) -> FakeWorker:
        worker = FakeWorker(on_line, on_exit)
        self.workers.append(worker)
        return worker

    @property
    def last(self) -> FakeWorker:
        return self.workers[-1]


@pytest.fixture()
def worker_factory() -> FakeWorkerFactory:
    return FakeWorkerFactory()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SERVERS = {
    "s1": {
        "credentials": {"host": "example.com", "username": "deploy", "identity_file": "/keys/id_ed25519"},
        "remotes": {"r1": "/srv/app", "staging": "/srv/staging"},
    },
    "s2": {
        "credentials": {"host": "other.example.com", "username": "ops", "port": 2222, "identity_file": "/keys/ops"},
        "remotes": {"r2": "/data"},
    },
    "s3": {
        "credentials": {"host": "pw.example.com", "username": "alice", "auth_method": "password"},
        "remotes": {"home": "/home/alice"},
    },
}


@pytest.fixture()
def servers_file(tmp_path: Path) -> Path:
    path = tmp_path / "servers.json"
    path.write_text(json.dumps(SERVERS), encoding="utf-8")
    return path


@pytest.fixture()
def config(tmp_path: Path, servers_file: Path) -> ConfigManager:
    """ConfigManager with ``/proj -> s1/r1`` and ``/other -> s2/r2`` selected."""
    cm = ConfigManager(base_dir=tmp_path / "cfg", servers_path=servers_file)
    cm.select("/proj", "s1", "r1")
    cm.select("/other", "s2", "r2")
    return cm
