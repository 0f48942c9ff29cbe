"""Shuttle — command-line entry point.

Configures logging, loads the configuration, and drives the orchestrator on
an asyncio event loop until every queued operation has been handled.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys

from shuttle.config import DEFAULT_CONFIG, ConfigManager, ConfigurationError, delete_password, store_password
from shuttle.operations import Operation, OperationKind, ProgressSnapshot
from shuttle.orchestrator import Orchestrator
from shuttle.utils.path_helpers import normalize_local_path
from shuttle.worker_process import WorkerSpawnError

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_SHUTDOWN_POLL = 0.1  # seconds
_SHUTDOWN_WAIT = 10  # seconds

log = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Queue runner
# ---------------------------------------------------------------------------


async def _run_queue(config: ConfigManager, kind: OperationKind, paths: list[str], root: str) -> int:
    """Enqueue *paths*, wait for the queue to drain, then disconnect."""
    loop = asyncio.get_running_loop()
    finished: asyncio.Future[str | None] = loop.create_future()
    failures: list[str] = []

    def on_item_complete(op: Operation, ok: bool, message: str) -> None:
        if ok:
            print(f"ok      {op.kind.name.lower()} {op.local_path}")
        else:
            print(f"failed  {op.kind.name.lower()} {op.local_path}: {message}")
            failures.append(op.local_path)
        if orchestrator.queue_length() == 0 and not finished.done():
            finished.set_result(None)

    def on_connection_failed(reason: str) -> None:
        if not finished.done():
            finished.set_result(reason)

    def on_progress(snapshot: ProgressSnapshot) -> None:
        if snapshot.file is not None:
            log.debug("%s %d%%", snapshot.file, snapshot.percent)

    orchestrator = Orchestrator(
        config,
        loop,
        on_progress=on_progress,
        on_item_complete=on_item_complete,
        on_connection_failed=on_connection_failed,
    )

    for path in paths:
        try:
            orchestrator.enqueue(kind, path, root)
        except ConfigurationError as exc:
            print(f"skipped {kind.name.lower()} {path}: {exc}")
            failures.append(path)
        except WorkerSpawnError as exc:
            log.error("%s", exc)
            return 1

    if orchestrator.queue_length() == 0:
        return 1 if failures else 0

    reason = await finished
    if reason is not None:
        log.error("Connection failed: %s", reason)
        failures.extend(op.local_path for op in orchestrator.get_queue())

    if orchestrator.disconnect():
        waited = 0.0
        while orchestrator.get_connection_status() != (False, False) and waited < _SHUTDOWN_WAIT:
            await asyncio.sleep(_SHUTDOWN_POLL)
            waited += _SHUTDOWN_POLL

    return 1 if failures else 0


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_servers(config: ConfigManager, args: argparse.Namespace) -> int:
    names = config.server_names()
    if not names:
        print("No servers configured.")
        return 1
    for name in names:
        server = config.get_server(name)
        creds = server.credentials
        print(f"{name}  ({creds.username}@{creds.address}, {creds.auth_method})")
        for remote in config.remote_names(name) or []:
            print(f"    {remote:<16} {server.remotes[remote]}")
    return 0


def _cmd_select(config: ConfigManager, args: argparse.Namespace) -> int:
    if args.server == "none":
        if not config.clear_selection(args.root):
            print(f"No selection for {args.root}")
        return 0
    if not args.remote:
        print("select: a remote name is required", file=sys.stderr)
        return 2
    config.select(args.root, args.server, args.remote)
    print(f"Selected: {args.server} -> {args.remote}")
    return 0


def _cmd_status(config: ConfigManager, args: argparse.Namespace) -> int:
    selection = config.get_selection(args.root)
    if selection is None:
        print(f"{args.root}: none")
        return 1
    target = config.resolve_target(args.root)
    print(f"{args.root}: {selection.server_name} -> {selection.remote_name} ({target.remote_base})")
    return 0


def _cmd_transfer(config: ConfigManager, args: argparse.Namespace) -> int:
    kind = OperationKind.parse(args.command)
    paths = [str(normalize_local_path(p)) for p in args.paths]
    return asyncio.run(_run_queue(config, kind, paths, args.root))


def _cmd_config(config: ConfigManager, args: argparse.Namespace) -> int:
    if args.key is None:
        for key, value in sorted(config.get_all().items()):
            print(f"{key:<20} {json.dumps(value)}")
        return 0
    if args.key not in DEFAULT_CONFIG:
        print(f"Unknown setting: {args.key}", file=sys.stderr)
        return 1
    if args.value is None:
        print(json.dumps(config.get(args.key)))
        return 0
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    config.set(args.key, value)
    return 0


def _cmd_store_password(config: ConfigManager, args: argparse.Namespace) -> int:
    server = config.get_server(args.server)
    if server is None:
        print(f"Unknown server: {args.server}", file=sys.stderr)
        return 1
    if args.delete:
        delete_password(server.credentials)
        print(f"Password removed for {server.credentials.account}")
        return 0
    password = getpass.getpass(f"Password for {server.credentials.account}: ")
    store_password(server.credentials, password)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shuttle", description="Queued SFTP uploads and removals.")
    parser.add_argument("--config-dir", help="settings directory (default ~/.shuttle)")
    parser.add_argument("--servers", help="server catalogue JSON (default <config-dir>/servers.json)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("servers", help="list configured servers and remotes").set_defaults(func=_cmd_servers)

    select = sub.add_parser("select", help="choose server/remote for a working root")
    select.add_argument("server", help="server name, or 'none' to clear")
    select.add_argument("remote", nargs="?")
    select.set_defaults(func=_cmd_select)

    status = sub.add_parser("status", help="show the selection for a working root")
    status.set_defaults(func=_cmd_status)

    for name in ("upload", "remove"):
        transfer = sub.add_parser(name, help=f"{name} paths under the working root")
        transfer.add_argument("paths", nargs="+")
        transfer.set_defaults(func=_cmd_transfer)

    settings = sub.add_parser("config", help="show or change a setting in config.json")
    settings.add_argument("key", nargs="?")
    settings.add_argument("value", nargs="?", help="JSON value; bare words are strings")
    settings.set_defaults(func=_cmd_config)

    password = sub.add_parser("store-password", help="store a server password in the OS keyring")
    password.add_argument("server")
    password.add_argument("--delete", action="store_true", help="remove the stored password instead")
    password.set_defaults(func=_cmd_store_password)

    for subparser in (select, status, *[sub.choices["upload"], sub.choices["remove"]]):
        subparser.add_argument("--root", default=os.getcwd(), help="working root (default: cwd)")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run Shuttle."""
    args = _build_parser().parse_args(argv)

    try:
        config = ConfigManager(
            base_dir=normalize_local_path(args.config_dir) if args.config_dir else None,
            servers_path=normalize_local_path(args.servers) if args.servers else None,
        )
    except ConfigurationError as exc:
        print(f"shuttle: {exc}", file=sys.stderr)
        return 1

    _configure_logging(args.log_level or config.get("log_level", "INFO"))
    log.debug("Starting Shuttle")

    try:
        return args.func(config, args)
    except ConfigurationError as exc:
        print(f"shuttle: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
