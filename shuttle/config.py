"""Configuration, server catalogue and working-root selections for Shuttle.

All settings are stored as JSON files under ``~/.shuttle/``.
Passwords are never written by Shuttle — they are delegated to ``keyring``.
The server catalogue (``servers.json``) is owned by the user and is only
ever read.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import keyring
import keyring.errors

from shuttle.utils.path_helpers import normalize_local_path, validate_remote_path

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "Shuttle"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "idle_timeout": 300,
    "auth_timeout": 30,
    "transfer_chunk_size": 32768,
    "ssh_timeout": 15,
    "worker_command": None,
    "servers_path": None,
    "log_level": "INFO",
}


class ConfigurationError(Exception):
    """Raised when a working root has no usable server/remote configuration."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class Credentials:
    """Connection parameters for one server."""

    host: str
    username: str
    port: int = 22
    auth_method: str = "key"  # "key" | "password"
    identity_file: str | None = None
    password: str | None = None
    trust_unknown_hosts: bool = False

    @property
    def address(self) -> str:
        """Host as sent to the worker — ``host`` or ``host:port``."""
        if self.port == 22:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def account(self) -> str:
        """Keyring account key for these credentials (user@host)."""
        return f"{self.username}@{self.host}"


@dataclass
class ServerConfig:
    """One entry of the server catalogue."""

    name: str
    credentials: Credentials
    remotes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Selection:
    """Server/remote pair chosen for a working root."""

    server_name: str
    remote_name: str


@dataclass(frozen=True)
class Target:
    """A fully resolved selection: everything needed to reach the remote base."""

    working_root: str
    server: ServerConfig
    remote_name: str
    remote_base: str

    @property
    def server_name(self) -> str:
        return self.server.name


def _parse_credentials(raw: Any) -> Credentials:
    if not isinstance(raw, dict):
        raise ValueError("'credentials' must be an object")
    host = raw.get("host")
    username = raw.get("username")
    if not host or not username:
        raise ValueError("credentials need 'host' and 'username'")

    identity_file = raw.get("identity_file")
    password = raw.get("password")
    auth_method = raw.get("auth_method")
    if auth_method is None:
        auth_method = "key" if identity_file else "password"
    if auth_method not in ("key", "password"):
        raise ValueError(f"unknown auth_method {auth_method!r}")
    if auth_method == "key" and not identity_file:
        raise ValueError("auth_method 'key' needs 'identity_file'")

    return Credentials(
        host=str(host),
        username=str(username),
        port=int(raw.get("port", 22)),
        auth_method=auth_method,
        identity_file=str(Path(identity_file).expanduser()) if identity_file else None,
        password=password,
        trust_unknown_hosts=bool(raw.get("trust_unknown_hosts", False)),
    )


def parse_servers(data: Any) -> dict[str, ServerConfig]:
    """Build the server catalogue from decoded ``servers.json`` content.

    Malformed entries are skipped with a warning; a non-object root raises
    :exc:`ConfigurationError`.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Server configuration root must be a JSON object")

    servers: dict[str, ServerConfig] = {}
    for name, entry in data.items():
        try:
            if not isinstance(entry, dict):
                raise ValueError("entry must be an object")
            credentials = _parse_credentials(entry.get("credentials"))
            remotes = entry.get("remotes") or {}
            if not isinstance(remotes, dict):
                raise ValueError("'remotes' must be an object")
            for remote_name, base in remotes.items():
                if not isinstance(base, str) or not validate_remote_path(base):
                    raise ValueError(f"remote {remote_name!r} has an invalid path")
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping server %r in configuration: %s", name, exc)
            continue
        servers[name] = ServerConfig(
            name=name,
            credentials=credentials,
            remotes={str(k): v for k, v in remotes.items()},
        )
    return servers


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages settings, the server catalogue and per-root selections.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt settings or selections file
    triggers a warning and a safe reset.  The server catalogue is never
    rewritten: if it cannot be read, :exc:`ConfigurationError` is raised.
    """

    def __init__(self, base_dir: Path | None = None, servers_path: Path | None = None) -> None:
        """Initialise, creating ``~/.shuttle/`` if necessary."""
        self._base = base_dir or Path.home() / ".shuttle"
        self._config_path = self._base / "config.json"
        self._selections_path = self._base / "selections.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._selections: dict[str, dict[str, str]] = self._load_selections()

        if servers_path is None and self._config.get("servers_path"):
            servers_path = Path(self._config["servers_path"]).expanduser()
        self._servers_path = servers_path or self._base / "servers.json"
        self._servers: dict[str, ServerConfig] = self._load_servers()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_selections(self) -> dict[str, dict[str, str]]:
        """Load ``selections.json``, returning an empty mapping on corruption."""
        if not self._selections_path.exists():
            return {}
        try:
            raw = self._selections_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Selections root must be a JSON object")
            return {
                root: entry
                for root, entry in loaded.items()
                if isinstance(entry, dict) and entry.get("server_name") and entry.get("remote")
            }
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt selections.json (%s) — resetting to empty", exc)
            self._atomic_write(self._selections_path, {})
            return {}

    def _load_servers(self) -> dict[str, ServerConfig]:
        """Load the read-only server catalogue."""
        if not self._servers_path.exists():
            logger.debug("No server catalogue at %s", self._servers_path)
            return {}
        try:
            data = json.loads(self._servers_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise ConfigurationError(
                f"Cannot read server configuration {self._servers_path}: {exc}"
            ) from exc
        servers = parse_servers(data)
        logger.info("Loaded %d server(s) from %s", len(servers), self._servers_path)
        return servers

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Server catalogue
    # ------------------------------------------------------------------

    def server_names(self) -> list[str]:
        return sorted(self._servers)

    def get_server(self, name: str) -> ServerConfig | None:
        """Return the :class:`ServerConfig` for *name*, or ``None``."""
        return self._servers.get(name)

    def remote_names(self, server_name: str) -> list[str] | None:
        """Return the remote names of *server_name*, or ``None`` if unknown."""
        server = self._servers.get(server_name)
        if server is None:
            return None
        return sorted(server.remotes)

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------

    @staticmethod
    def _root_key(working_root: str) -> str:
        return str(normalize_local_path(working_root))

    def get_selection(self, working_root: str) -> Selection | None:
        """Return the selection for *working_root*, or ``None``."""
        entry = self._selections.get(self._root_key(working_root))
        if not entry:
            return None
        return Selection(server_name=entry["server_name"], remote_name=entry["remote"])

    def select(self, working_root: str, server_name: str, remote_name: str) -> None:
        """Persist *server_name*/*remote_name* as the selection for *working_root*.

        Raises:
            ConfigurationError: The server or remote is not in the catalogue.
        """
        server = self._servers.get(server_name)
        if server is None:
            raise ConfigurationError(f"Unknown server: {server_name}")
        if remote_name not in server.remotes:
            raise ConfigurationError(f"Unknown remote {remote_name!r} for server {server_name}")

        key = self._root_key(working_root)
        self._selections[key] = {"server_name": server_name, "remote": remote_name}
        self._atomic_write(self._selections_path, self._selections)
        logger.info("Selected %s -> %s for %s", server_name, remote_name, key)

    def clear_selection(self, working_root: str) -> bool:
        """Forget the selection for *working_root*; return True if one existed."""
        key = self._root_key(working_root)
        if self._selections.pop(key, None) is None:
            return False
        self._atomic_write(self._selections_path, self._selections)
        logger.info("Selection cleared for %s", key)
        return True

    def resolve_target(self, working_root: str) -> Target:
        """Resolve *working_root* to its server and remote base path.

        Raises:
            ConfigurationError: No selection, or it names an unknown server
                or remote.
        """
        selection = self.get_selection(working_root)
        if selection is None:
            raise ConfigurationError(f"No server selected for {working_root}")
        server = self._servers.get(selection.server_name)
        if server is None:
            raise ConfigurationError(
                f"Selected server {selection.server_name!r} is not configured"
            )
        remote_base = server.remotes.get(selection.remote_name)
        if remote_base is None:
            raise ConfigurationError(
                f"Unknown remote {selection.remote_name!r} for server {server.name}"
            )
        return Target(
            working_root=self._root_key(working_root),
            server=server,
            remote_name=selection.remote_name,
            remote_base=remote_base,
        )


# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------


def lookup_password(credentials: Credentials) -> str | None:
    """Return the password for *credentials*, falling back to the OS keyring."""
    if credentials.password:
        return credentials.password
    try:
        return keyring.get_password(_KEYRING_SERVICE, credentials.account)
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring lookup failed for %s: %s", credentials.account, exc)
        return None


def store_password(credentials: Credentials, password: str) -> None:
    """Store *password* in the OS keyring for these credentials."""
    keyring.set_password(_KEYRING_SERVICE, credentials.account, password)
    logger.debug("Password stored in keyring for %s", credentials.account)


def delete_password(credentials: Credentials) -> None:
    """Remove the stored password from the OS keyring."""
    try:
        keyring.delete_password(_KEYRING_SERVICE, credentials.account)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No stored password for %s", credentials.account)
        return
    logger.debug("Password deleted from keyring for %s", credentials.account)
