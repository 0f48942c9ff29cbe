"""SSH/SFTP session held by the worker process.

One :class:`SSHConnection` wraps a paramiko ``SSHClient`` and the
``SFTPClient`` opened on it.  The worker creates exactly one per run and
never reconnects; when the transport dies the worker exits and the
orchestrator starts a new one.
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path

import paramiko

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30
KNOWN_HOSTS = Path.home() / ".ssh" / "known_hosts"


class UnknownHostError(Exception):
    """The server's host key is missing from, or conflicts with, known_hosts.

    ``fingerprint`` is the colon-separated MD5 fingerprint of the offered
    key, empty for a mismatch.
    """

    def __init__(self, message: str, hostname: str = "", key_type: str = "", fingerprint: str = "") -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint


class NotConnectedError(Exception):
    """An SFTP client was requested before :meth:`SSHConnection.connect`."""


class _RejectUnknownHost(paramiko.MissingHostKeyPolicy):
    """Refuse hosts that are not in known_hosts, reporting the offered key."""

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        fingerprint = key.get_fingerprint().hex(":")
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts ({key.get_name()} {fingerprint})",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
        )


def _quiet_close(client: paramiko.SSHClient) -> None:
    try:
        client.close()
    except Exception:
        logger.debug("Ignoring error while closing SSH client", exc_info=True)


def split_address(address: str) -> tuple[str, int]:
    """Split ``host`` or ``host:port`` into ``(host, port)``.

    Bare IPv6 addresses (more than one colon) are returned with port 22.
    """
    host, sep, port = address.rpartition(":")
    if sep and host and ":" not in host and port.isdigit():
        return host, int(port)
    return address, 22


class SSHConnection:
    """One authenticated SFTP session.

    Args:
        host: Server name or address.
        username: Login name.
        port: SSH port.
        auth_type: ``"key"`` (uses *key_path*) or ``"password"``.
        key_path: Private key file for key authentication.
        password: Password for password authentication.
        timeout: TCP connect and banner timeout, in seconds.
        trust_unknown_hosts: Add unknown host keys instead of refusing them.
    """

    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        auth_type: str = "key",
        key_path: str | None = None,
        password: str | None = None,
        timeout: float = 15.0,
        trust_unknown_hosts: bool = False,
    ) -> None:
        self.host = host
        self.username = username
        self.port = port
        self.auth_type = auth_type
        self.key_path = key_path
        self.password = password
        self.timeout = timeout
        self.trust_unknown_hosts = trust_unknown_hosts

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def _credentials(self) -> dict:
        # Agent and ~/.ssh key discovery stay off so only the given credential is tried.
        if self.auth_type == "password":
            return {"password": self.password, "allow_agent": False, "look_for_keys": False}
        return {"key_filename": self.key_path, "allow_agent": False, "look_for_keys": False}

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if KNOWN_HOSTS.exists():
            client.load_host_keys(str(KNOWN_HOSTS))
        policy = paramiko.AutoAddPolicy() if self.trust_unknown_hosts else _RejectUnknownHost()
        client.set_missing_host_key_policy(policy)
        return client

    def connect(self) -> None:
        """Open the SSH transport, authenticate and start the SFTP subsystem.

        Raises:
            UnknownHostError: The host key is unknown or does not match.
            paramiko.AuthenticationException: The credential was refused.
            paramiko.SSHException: Any other SSH-level failure.
            OSError: DNS, TCP or timeout failures.
        """
        logger.info("Opening SFTP session %s@%s:%d (%s auth)", self.username, self.host, self.port, self.auth_type)
        client = self._new_client()
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                timeout=self.timeout,
                **self._credentials(),
            )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(KEEPALIVE_SECONDS)
            sftp = client.open_sftp()
        except paramiko.BadHostKeyException as exc:
            _quiet_close(client)
            raise UnknownHostError(
                f"Host key for {self.host} does not match ~/.ssh/known_hosts",
                hostname=self.host,
            ) from exc
        except (UnknownHostError, paramiko.SSHException, socket.timeout, OSError):
            _quiet_close(client)
            raise

        self._client, self._sftp = client, sftp
        logger.info("SFTP session to %s is up", self.host)

    def is_alive(self) -> bool:
        """True while the SSH transport reports itself active."""
        if self._client is None or self._sftp is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def get_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise NotConnectedError(f"No SFTP session to {self.host}")
        return self._sftp

    def disconnect(self) -> None:
        """Close the SFTP channel and the SSH transport; safe to call twice."""
        sftp, self._sftp = self._sftp, None
        client, self._client = self._client, None
        if sftp is not None:
            try:
                sftp.close()
            except Exception:
                logger.debug("Ignoring error while closing SFTP channel", exc_info=True)
        if client is not None:
            _quiet_close(client)
            logger.info("SFTP session to %s closed", self.host)
