"""Session orchestrator: owns the operation queue and drives the worker.

The orchestrator is single-threaded.  Every public method, worker line,
worker exit and timer callback runs on one event loop (normally asyncio's),
so the queue, the session and the progress snapshot need no locking.

Flow::

    enqueue() ─► queue ─► ensure_connection() ─► spawn worker
                                 │                     │ prompts
                                 ▼                     ▼
                          handshake FSM ──► ACTIVE ──► process_next()
                                                       │ upload/remove
                          status line ◄────────────────┘
                               │
                               └─► retire head, process_next()

Timers are keyed by purpose (``"idle"``, ``"auth"``) and every callback is
bound to the generation of the session that armed it, so nothing ever acts
on a session that has already been replaced.
"""

from __future__ import annotations

import functools
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, Protocol

from shuttle import protocol
from shuttle.config import ConfigManager, ConfigurationError, Target, lookup_password
from shuttle.handshake import Phase, advance
from shuttle.operations import Operation, OperationKind, OperationQueue, ProgressSnapshot
from shuttle.utils.path_helpers import relative_to_base, remote_path_for
from shuttle.worker_process import WorkerProcess, WorkerSpawnError, default_worker_command

logger = logging.getLogger(__name__)

_IDLE = "idle"
_AUTH = "auth"

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class Scheduler(Protocol):
    """The subset of ``asyncio.AbstractEventLoop`` the orchestrator needs."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any: ...

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> Any: ...


class WorkerHandle(Protocol):
    def send(self, line: str) -> bool: ...

    def kill(self) -> None: ...


WorkerFactory = Callable[[Callable[[str], None], Callable[[int], None]], WorkerHandle]
ItemCompleteCallback = Callable[[Operation, bool, str], None]
ProgressCallback = Callable[[ProgressSnapshot], None]
NotifyCallback = Callable[[int, str], None]


class ConnectResult(Enum):
    """Outcome of :meth:`Orchestrator.ensure_connection`."""

    READY = auto()  # already active; callback ran
    STARTED = auto()  # worker spawned; callback runs once active
    BUSY = auto()  # an attempt is already in flight


@dataclass
class WorkerSession:
    """The one worker process the orchestrator currently owns."""

    handle: WorkerHandle
    generation: int
    target: Target
    password: str | None = None
    phase: Phase = Phase.AWAITING_HOST
    started_at: float = field(default_factory=time.monotonic)
    closing: bool = False
    reconnect_after: bool = False
    reached_active: bool = False
    recovering: bool = False  # respawned after a crash
    last_error: str | None = None

    @property
    def server_name(self) -> str:
        return self.target.server_name


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Queues uploads/removes and replays them through a single worker."""

    def __init__(
        self,
        config: ConfigManager,
        scheduler: Scheduler,
        worker_factory: WorkerFactory | None = None,
        on_progress: ProgressCallback | None = None,
        on_item_complete: ItemCompleteCallback | None = None,
        on_notify: NotifyCallback | None = None,
        on_connection_failed: Callable[[str], None] | None = None,
        idle_timeout: float | None = None,
        auth_timeout: float | None = None,
    ) -> None:
        """Initialise the orchestrator (no worker is started yet).

        Args:
            config: Source of selections, servers and settings.
            scheduler: Event loop providing ``call_later`` and
                ``call_soon_threadsafe``.
            worker_factory: ``(on_line, on_exit) -> handle``; defaults to
                spawning :mod:`shuttle.worker` as a subprocess.
            on_progress: Called whenever the progress snapshot changes.
            on_item_complete: Called with ``(operation, ok, message)`` when an
                operation leaves the queue after being processed or dropped.
            on_notify: Called with ``(logging level, message)`` for
                operator-visible events.
            on_connection_failed: Called with the reason when a connection
                attempt fails or times out.
            idle_timeout: Seconds of inactivity before the worker is closed.
            auth_timeout: Seconds allowed for the handshake.
        """
        self._config = config
        self._scheduler = scheduler
        self._worker_factory = worker_factory or self._spawn_worker_process
        self.on_progress = on_progress
        self.on_item_complete = on_item_complete
        self.on_notify = on_notify
        self.on_connection_failed = on_connection_failed
        self._idle_timeout = float(idle_timeout if idle_timeout is not None else config.get("idle_timeout", 300))
        self._auth_timeout = float(auth_timeout if auth_timeout is not None else config.get("auth_timeout", 30))

        self._queue = OperationQueue()
        self._progress = ProgressSnapshot()
        self._session: WorkerSession | None = None
        self._generations = itertools.count(1)
        self._pending_callbacks: list[Callable[[], None]] = []
        self._timers: dict[str, Any] = {}
        self._in_flight_base: str | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, kind: OperationKind | str, local_path: str, working_root: str) -> int:
        """Queue an upload or remove of *local_path* and return its id.

        The working root's selection is checked before anything is queued.

        Raises:
            ConfigurationError: No usable server/remote for *working_root*,
                *local_path* lies outside it, or no password is stored for a
                password-authenticated server.  Nothing is queued.
            WorkerSpawnError: The worker could not be started.  The operation
                stays queued for the next attempt.
        """
        kind = OperationKind.parse(kind)
        target = self._config.resolve_target(working_root)
        try:
            remote_path_for(local_path, working_root, target.remote_base)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        op = self._queue.add(kind, local_path, working_root)
        try:
            self.ensure_connection(self.process_next, working_root=working_root)
        except ConfigurationError:
            self._queue.cancel(op.id)
            raise
        return op.id

    def cancel(self, op_id: int) -> bool:
        """Remove a queued operation that has not been sent yet."""
        return self._queue.cancel(op_id)

    def clear_pending(self) -> int:
        """Remove every queued operation that has not been sent yet."""
        return self._queue.clear_pending()

    def get_queue(self) -> list[Operation]:
        return self._queue.snapshot()

    def queue_length(self) -> int:
        return len(self._queue)

    def get_progress(self) -> ProgressSnapshot:
        return replace(self._progress)

    def get_connection_status(self) -> tuple[bool, bool]:
        """Return ``(ready, connecting)``."""
        session = self._session
        if session is None:
            return False, False
        ready = session.phase is Phase.ACTIVE and not session.closing
        return ready, session.phase.connecting

    @property
    def phase(self) -> Phase:
        return self._session.phase if self._session else Phase.DISCONNECTED

    def disconnect(self) -> bool:
        """Ask the worker to exit; teardown happens when it does.

        Returns False if there is no worker.
        """
        session = self._session
        if session is None:
            return False
        self._pending_callbacks.clear()
        logger.info("Disconnect requested for %s", session.server_name)
        self._request_exit(session)
        return True

    def set_log_level(self, level: int | str) -> None:
        """Set the log level of every ``shuttle`` logger."""
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
        logging.getLogger("shuttle").setLevel(level)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def ensure_connection(
        self,
        callback: Callable[[], None] | None = None,
        working_root: str | None = None,
    ) -> ConnectResult:
        """Make sure a worker is (or is becoming) active.

        Never blocks.  *callback* runs immediately when the session is
        already active, otherwise once the handshake completes.  It is
        dropped if the attempt fails.

        Raises:
            ConfigurationError: Nothing to connect for, or the working
                root's selection is unusable.
            WorkerSpawnError: The worker could not be started.
        """
        session = self._session
        if session is not None and session.phase is Phase.ACTIVE and not session.closing:
            if callback:
                callback()
            self._arm_idle_timer()
            return ConnectResult.READY

        if session is not None:
            if callback:
                self._pending_callbacks.append(callback)
            logger.debug("Connection attempt already in flight (%s)", session.phase.name)
            return ConnectResult.BUSY

        if working_root is None:
            head = self._queue.head()
            if head is None:
                raise ConfigurationError("Nothing to connect for: no working root given and queue empty")
            working_root = head.working_root

        target = self._config.resolve_target(working_root)
        credentials = target.server.credentials
        password = None
        if credentials.auth_method == "password":
            password = lookup_password(credentials)
            if not password:
                raise ConfigurationError(f"No password stored for {credentials.account}")

        generation = next(self._generations)
        handle = self._worker_factory(
            functools.partial(self._handle_line, generation),
            functools.partial(self._handle_exit, generation),
        )
        self._session = WorkerSession(
            handle=handle,
            generation=generation,
            target=target,
            password=password,
        )
        if callback:
            self._pending_callbacks.append(callback)
        self._arm_timer(_AUTH, self._auth_timeout, functools.partial(self._on_auth_timeout, generation))
        logger.info(
            "Connecting to %s (%s@%s), session %d",
            target.server_name,
            credentials.username,
            credentials.address,
            generation,
        )
        return ConnectResult.STARTED

    def _spawn_worker_process(
        self,
        on_line: Callable[[str], None],
        on_exit: Callable[[int], None],
    ) -> WorkerProcess:
        command = self._config.get("worker_command") or default_worker_command(
            chunk_size=self._config.get("transfer_chunk_size"),
            timeout=self._config.get("ssh_timeout"),
        )
        return WorkerProcess(
            command,
            on_line=on_line,
            on_exit=on_exit,
            dispatch=self._scheduler.call_soon_threadsafe,
        )

    def _current(self, generation: int) -> WorkerSession | None:
        session = self._session
        if session is None or session.generation != generation:
            return None
        return session

    def _request_exit(self, session: WorkerSession, reconnect_after: bool = False) -> None:
        session.closing = True
        session.reconnect_after = reconnect_after
        self._cancel_timer(_IDLE)
        if session.phase is Phase.ACTIVE:
            session.handle.send(protocol.CMD_EXIT)
        else:
            session.handle.kill()

    def _teardown(self) -> None:
        """Forget the current session; queued items will be resent."""
        self._cancel_timer(_IDLE)
        self._cancel_timer(_AUTH)
        self._session = None
        self._in_flight_base = None
        self._queue.reset_processing()
        if self._progress.file is not None or self._progress.percent is not None:
            self._progress.reset()
            self._fire_progress()

    def _reconnect(self, working_root: str | None, recovering: bool = False) -> None:
        try:
            result = self.ensure_connection(self.process_next, working_root=working_root)
        except (ConfigurationError, WorkerSpawnError) as exc:
            self._notify(logging.ERROR, f"Reconnect failed: {exc}")
            self._fire_connection_failed(str(exc))
            return
        if result is ConnectResult.STARTED and self._session is not None:
            self._session.recovering = recovering

    # ------------------------------------------------------------------
    # Worker events
    # ------------------------------------------------------------------

    def _handle_line(self, generation: int, line: str) -> None:
        session = self._current(generation)
        if session is None:
            logger.debug("Ignoring output from superseded worker %d: %r", generation, line)
            return
        logger.debug("worker> %s", line)

        status = protocol.parse_status(line)
        if status is not None and not status.ok:
            session.last_error = status.message

        if session.phase is Phase.ACTIVE:
            self._handle_active_line(session, line, status)
            return

        transition = advance(session.phase, line, session.target.server.credentials, session.password)
        if transition.reply is not None:
            logger.debug("worker< %s", "<credential>" if transition.secret else transition.reply)
            session.handle.send(transition.reply)
        if transition.phase is not session.phase:
            logger.debug("Handshake %s -> %s", session.phase.name, transition.phase.name)
            session.phase = transition.phase
        if transition.connected:
            self._on_connected(session)

    def _on_connected(self, session: WorkerSession) -> None:
        session.reached_active = True
        self._cancel_timer(_AUTH)
        elapsed = time.monotonic() - session.started_at
        self._notify(logging.INFO, f"Connected to {session.server_name} in {elapsed:.1f}s")

        callbacks, self._pending_callbacks = self._pending_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Exception in connection callback")

        self._arm_idle_timer()
        self.process_next()

    def _handle_active_line(self, session: WorkerSession, line: str, status: protocol.Status | None) -> None:
        progress = protocol.parse_progress(line)
        if progress is not None:
            file, percent = progress
            if self._in_flight_base:
                file = relative_to_base(file, self._in_flight_base)
            self._progress.file = file
            self._progress.percent = percent
            self._fire_progress()
            return

        if status is None or not status.is_completion:
            return

        op = self._queue.current()
        if op is None:
            logger.debug("Status %r with nothing in flight — ignored", line)
            return

        self._queue.retire_head()
        self._in_flight_base = None
        self._progress.reset()
        self._fire_progress()
        if status.ok:
            logger.info(
                "%s #%d done: %s (queued %.1fs)",
                op.kind.name,
                op.id,
                op.local_path,
                time.time() - op.created_at,
            )
        else:
            self._notify(logging.ERROR, f"{op.kind.name.capitalize()} of {op.local_path} failed: {status.message}")
        self._fire_item_complete(op, status.ok, status.message)

        self._arm_idle_timer()
        self.process_next()

    def _handle_exit(self, generation: int, code: int) -> None:
        session = self._current(generation)
        if session is None:
            logger.debug("Superseded worker %d exited with code %d", generation, code)
            return

        self._teardown()

        if session.closing:
            logger.info("Worker for %s exited (code %d) after requested shutdown", session.server_name, code)
            if self._queue and (session.reconnect_after or self._pending_callbacks):
                self._reconnect(None)
            return

        if not session.reached_active and not session.recovering:
            reason = session.last_error or f"worker exited with code {code}"
            self._pending_callbacks.clear()
            self._notify(logging.ERROR, f"Connection to {session.server_name} failed: {reason}")
            self._fire_connection_failed(reason)
            return

        if session.recovering and not session.reached_active:
            # Respawned after a crash: retry without limit.
            self._pending_callbacks.clear()
            logger.debug("Reconnect attempt %d failed: %s", generation, session.last_error)
        self._notify(
            logging.WARNING,
            f"SFTP connection lost (exit code {code}). Reconnecting...",
        )
        self._reconnect(session.target.working_root, recovering=True)

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    def process_next(self) -> bool:
        """Send the head operation to the worker if nothing is in flight.

        Returns True if a command was sent.
        """
        session = self._session
        if session is None or session.phase is not Phase.ACTIVE or session.closing:
            return False

        while True:
            head = self._queue.head()
            if head is None or head.processing:
                return False

            try:
                target = self._config.resolve_target(head.working_root)
                remote = remote_path_for(head.local_path, head.working_root, target.remote_base)
            except (ConfigurationError, ValueError) as exc:
                self._queue.retire_head()
                self._notify(logging.ERROR, f"Dropped {head.kind.name.lower()} of {head.local_path}: {exc}")
                self._fire_item_complete(head, False, str(exc))
                continue

            if target.server_name != session.server_name:
                logger.info(
                    "#%d targets %s; closing session to %s",
                    head.id,
                    target.server_name,
                    session.server_name,
                )
                self._request_exit(session, reconnect_after=True)
                return False

            if head.kind is OperationKind.UPLOAD:
                line = protocol.format_command(protocol.CMD_UPLOAD, head.local_path, remote)
            else:
                line = protocol.format_command(protocol.CMD_REMOVE, remote)

            self._queue.mark_head_processing()
            self._in_flight_base = target.remote_base
            logger.info("Sending %s #%d: %s", head.kind.name, head.id, line)
            session.handle.send(line)
            return True

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_timer(self, purpose: str, delay: float, callback: Callable[[], None]) -> None:
        self._cancel_timer(purpose)
        self._timers[purpose] = self._scheduler.call_later(delay, callback)

    def _cancel_timer(self, purpose: str) -> None:
        handle = self._timers.pop(purpose, None)
        if handle is not None:
            handle.cancel()

    def _arm_idle_timer(self) -> None:
        session = self._session
        if session is None:
            return
        self._arm_timer(_IDLE, self._idle_timeout, functools.partial(self._on_idle_timeout, session.generation))

    def _on_idle_timeout(self, generation: int) -> None:
        self._timers.pop(_IDLE, None)
        session = self._current(generation)
        if session is None or session.phase is not Phase.ACTIVE or session.closing:
            return
        if self._queue:
            self._arm_idle_timer()
            return

        self._notify(logging.INFO, f"SFTP connection to {session.server_name} closed after inactivity")
        session.closing = True
        session.handle.send(protocol.CMD_EXIT)
        self._teardown()

    def _on_auth_timeout(self, generation: int) -> None:
        self._timers.pop(_AUTH, None)
        session = self._current(generation)
        if session is None or session.phase is Phase.ACTIVE:
            return

        reason = f"Authentication with {session.server_name} timed out after {self._auth_timeout:g}s"
        self._pending_callbacks.clear()
        session.closing = True
        session.handle.kill()
        self._teardown()
        self._notify(logging.ERROR, reason)
        self._fire_connection_failed(reason)

    # ------------------------------------------------------------------
    # Host callbacks
    # ------------------------------------------------------------------

    def _notify(self, level: int, message: str) -> None:
        logger.log(level, message)
        if self.on_notify:
            try:
                self.on_notify(level, message)
            except Exception:
                logger.exception("Exception in on_notify callback")

    def _fire_progress(self) -> None:
        if self.on_progress:
            try:
                self.on_progress(replace(self._progress))
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _fire_item_complete(self, op: Operation, ok: bool, message: str) -> None:
        if self.on_item_complete:
            try:
                self.on_item_complete(replace(op), ok, message)
            except Exception:
                logger.exception("Exception in on_item_complete callback")

    def _fire_connection_failed(self, reason: str) -> None:
        if self.on_connection_failed:
            try:
                self.on_connection_failed(reason)
            except Exception:
                logger.exception("Exception in on_connection_failed callback")
