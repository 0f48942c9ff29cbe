"""Worker process: holds one SFTP session and executes queued commands.

Run as ``python -m shuttle.worker``.  Standard output carries the line
protocol defined in :mod:`shuttle.protocol` and nothing else; diagnostics
go to standard error through :mod:`logging`.

Lifecycle:
1. Prompt for hostname, username, authentication method and credential.
2. Authenticate; print ``1|Connected to <host> as <user>`` or ``0|<reason>``.
3. Loop over ``upload`` / ``remove`` / ``exit`` commands, one at a time,
   answering each with a single status line.
"""

from __future__ import annotations

import argparse
import logging
import os
import posixpath
import sys
from typing import Callable, TextIO

import paramiko

from shuttle import protocol
from shuttle.connection import NotConnectedError, SSHConnection, UnknownHostError, split_address
from shuttle.remote_tree import RemoteTreeError, ensure_directory_chain, remove_path_recursive

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

ConnectionFactory = Callable[..., SSHConnection]


class _InputClosed(Exception):
    """Standard input reached EOF."""


class WorkerShell:
    """Interactive command shell around a single :class:`SSHConnection`.

    The streams and the connection factory are injectable so the shell can
    be driven in-process by tests.
    """

    def __init__(
        self,
        stdin: TextIO,
        stdout: TextIO,
        connection_factory: ConnectionFactory = SSHConnection,
        chunk_size: int = CHUNK_SIZE,
        timeout: float = 15.0,
    ) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._connection_factory = connection_factory
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._connection: SSHConnection | None = None

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def _emit(self, line: str) -> None:
        self._stdout.write(line + "\n")
        self._stdout.flush()

    def _status(self, ok: bool, message: str) -> None:
        self._emit(protocol.format_status(ok, message))

    def _read_line(self) -> str:
        line = self._stdin.readline()
        if not line:
            raise _InputClosed()
        return line.rstrip("\r\n")

    def _ask(self, prompt: str, field: str) -> str:
        self._emit(prompt)
        try:
            return self._read_line()
        except _InputClosed:
            raise _InputClosed(f"Failed to read {field}") from None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run the handshake and the command loop; return the exit code."""
        try:
            connection = self._authenticate()
        except _InputClosed as exc:
            self._status(False, str(exc))
            return 1
        if connection is None:
            return 1

        self._connection = connection
        try:
            return self._command_loop()
        finally:
            connection.disconnect()
            self._connection = None

    def _authenticate(self) -> SSHConnection | None:
        address = self._ask(protocol.HOSTNAME_PROMPT, "hostname")
        username = self._ask(protocol.USERNAME_PROMPT, "username")
        method = self._ask(protocol.AUTH_METHOD_PROMPT, "auth method").strip().lower()

        if method == "password":
            secret = self._ask(protocol.PASSWORD_PROMPT, "password")
            kwargs = {"auth_type": "password", "password": secret}
        else:
            secret = self._ask(protocol.KEY_PROMPT, "private key path")
            kwargs = {"auth_type": "key", "key_path": os.path.expanduser(secret)}

        host, port = split_address(address.strip())
        connection = self._connection_factory(
            host=host,
            username=username.strip(),
            port=port,
            timeout=self._timeout,
            **kwargs,
        )
        try:
            connection.connect()
        except paramiko.AuthenticationException as exc:
            logger.error("Authentication failed for %s@%s: %s", username, host, exc)
            self._status(False, f"Authentication failed: {exc}")
            return None
        except (UnknownHostError, paramiko.SSHException, OSError) as exc:
            logger.error("Failed to establish SFTP session with %s: %s", host, exc)
            self._status(False, f"Failed to establish SFTP session: {exc}")
            return None

        self._status(True, f"Connected to {host} as {username.strip()}")
        return connection

    # ------------------------------------------------------------------
    # Command loop
    # ------------------------------------------------------------------

    def _command_loop(self) -> int:
        assert self._connection is not None
        while True:
            if not self._connection.is_alive():
                logger.error("SFTP session lost")
                self._status(False, protocol.SESSION_LOST)
                return 1

            try:
                line = self._read_line()
            except _InputClosed:
                self._status(False, "Failed to read input")
                return 1

            parsed = protocol.parse_command(line)
            if parsed is None:
                logger.debug("Rejected command line %r", line)
                self._status(False, protocol.UNKNOWN_COMMAND)
                continue

            command, args = parsed
            if command == protocol.CMD_EXIT:
                self._status(True, protocol.EXITING)
                return 0
            if command == protocol.CMD_UPLOAD:
                self._run_upload(*args)
            elif command == protocol.CMD_REMOVE:
                self._run_remove(*args)

    def _run_upload(self, local: str, remote: str) -> None:
        try:
            self.upload(local, remote)
        except (RemoteTreeError, NotConnectedError, OSError, paramiko.SSHException) as exc:
            logger.error("Upload %s -> %s failed: %s", local, remote, exc)
            self._status(False, str(exc) or "Upload failed")
            return
        logger.info("Uploaded %s -> %s", local, remote)
        self._status(True, protocol.UPLOAD_SUCCEEDED)

    def _run_remove(self, remote: str) -> None:
        try:
            remove_path_recursive(self._connection.get_sftp(), remote)
        except (RemoteTreeError, NotConnectedError, OSError, paramiko.SSHException) as exc:
            logger.error("Remove %s failed: %s", remote, exc)
            self._status(False, str(exc) or "Remove failed")
            return
        logger.info("Removed %s", remote)
        self._status(True, protocol.REMOVE_SUCCEEDED)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(self, local: str, remote: str) -> None:
        """Upload *local* to *remote*, creating parent directories as needed.

        A local directory only gets its remote counterpart created; its
        contents are not copied.
        """
        sftp = self._connection.get_sftp()

        if os.path.isdir(local):
            ensure_directory_chain(sftp, remote)
            return

        try:
            local_fh = open(local, "rb")
        except OSError as exc:
            raise OSError(f"Failed to open local file: {local} ({exc.strerror})") from exc

        with local_fh:
            total = os.fstat(local_fh.fileno()).st_size
            parent = posixpath.dirname(remote)
            if parent:
                ensure_directory_chain(sftp, parent)
            try:
                remote_fh = sftp.open(remote, "wb")
            except OSError as exc:
                raise OSError(f"Unable to open remote file: {remote} ({exc})") from exc
            with remote_fh:
                self._stream_with_progress(local_fh, remote_fh, remote, total)

    def _stream_with_progress(self, src, dst, remote: str, total: int) -> None:
        """Copy *src* to *dst* in chunks, emitting a progress line per percent step."""
        sent = 0
        last_percent = -1
        if total == 0:
            self._emit(protocol.format_progress(remote, 100))
            return
        while True:
            chunk = src.read(self._chunk_size)
            if not chunk:
                break
            _write_fully(dst, chunk)
            sent += len(chunk)
            percent = min(100, sent * 100 // total)
            if percent != last_percent:
                self._emit(protocol.format_progress(remote, percent))
                last_percent = percent


def _write_fully(fh, data: bytes) -> None:
    """Write all of *data* to *fh*, retrying short writes.

    ``write`` implementations that return ``None`` (paramiko's SFTPFile)
    always consume the whole buffer.
    """
    while data:
        written = fh.write(data)
        if written is None:
            return
        if written <= 0:
            raise OSError("SFTP write error: no bytes written")
        data = data[written:]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _configure_logging(level: str) -> None:
    """Set up root logging to stderr; stdout belongs to the protocol."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    """Run the worker on this process's standard streams."""
    parser = argparse.ArgumentParser(prog="shuttle-worker", description=__doc__.splitlines()[0])
    parser.add_argument("--chunk-size", type=int, default=CHUNK_SIZE)
    parser.add_argument("--timeout", type=float, default=15.0)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    logger.debug("Worker started (pid %d)", os.getpid())
    shell = WorkerShell(
        sys.stdin,
        sys.stdout,
        chunk_size=max(1, args.chunk_size),
        timeout=args.timeout,
    )
    return shell.run()


if __name__ == "__main__":
    sys.exit(main())
