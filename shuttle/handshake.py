"""Handshake state machine for the worker's startup prompts.

:func:`advance` is a total function ``(phase, line) -> Transition``: every
line either matches the single prompt the current phase is waiting for, or
leaves the phase untouched.  Stray output therefore never moves the
machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto

from shuttle import protocol
from shuttle.config import Credentials


class Phase(Enum):
    """Lifecycle phase of a worker session."""

    DISCONNECTED = auto()
    AWAITING_HOST = auto()
    AWAITING_USER = auto()
    AWAITING_CREDENTIAL = auto()
    READY = auto()
    ACTIVE = auto()

    @property
    def connecting(self) -> bool:
        """True while a handshake is in flight."""
        return self not in (Phase.DISCONNECTED, Phase.ACTIVE)


@dataclass(frozen=True)
class Transition:
    """Result of feeding one line to the handshake."""

    phase: Phase
    reply: str | None = None
    connected: bool = False
    secret: bool = False  # reply must not be logged


def advance(phase: Phase, line: str, credentials: Credentials, password: str | None = None) -> Transition:
    """Compute the next phase and the reply (if any) for *line*.

    *password* overrides ``credentials.password`` (e.g. a keyring lookup).
    """
    if phase is Phase.AWAITING_HOST and protocol.HOSTNAME_PROMPT in line:
        return Transition(Phase.AWAITING_USER, credentials.address)

    if phase is Phase.AWAITING_USER and protocol.USERNAME_PROMPT in line:
        return Transition(Phase.AWAITING_CREDENTIAL, credentials.username)

    if phase is Phase.AWAITING_CREDENTIAL:
        if protocol.AUTH_METHOD_PROMPT in line:
            return Transition(Phase.AWAITING_CREDENTIAL, credentials.auth_method)
        if protocol.KEY_PROMPT in line:
            return Transition(Phase.READY, credentials.identity_file or "")
        if protocol.PASSWORD_PROMPT in line:
            secret = password if password is not None else credentials.password
            return Transition(Phase.READY, secret or "", secret=True)

    if phase is Phase.READY and line.startswith(protocol.CONNECTED_PREFIX):
        return Transition(Phase.ACTIVE, connected=True)

    return Transition(phase)
