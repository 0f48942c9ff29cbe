"""Line protocol spoken between the orchestrator and the worker.

Every message is one newline-terminated line of text:

* prompts during startup (``Enter SSH hostname`` ...),
* status lines ``1|<message>`` (success) and ``0|<message>`` (failure),
* progress lines ``PROGRESS|<remote file>|<percent>``,
* commands ``upload <local> <remote>``, ``remove <remote>`` and ``exit``.

Command arguments are shell-quoted, so paths containing spaces survive the
trip; plain paths go over the wire unchanged.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass

HOSTNAME_PROMPT = "Enter SSH hostname"
USERNAME_PROMPT = "Enter SSH username"
AUTH_METHOD_PROMPT = "Authentication method (key/password)"
PASSWORD_PROMPT = "Enter password"
KEY_PROMPT = "Enter path to private key"

CONNECTED_PREFIX = "1|Connected to"
UPLOAD_SUCCEEDED = "Upload succeeded"
REMOVE_SUCCEEDED = "Remove succeeded"
EXITING = "Exiting shell"
SESSION_LOST = "SFTP session lost"
UNKNOWN_COMMAND = "Unknown command or incorrect usage"

PROGRESS_PREFIX = "PROGRESS|"

CMD_UPLOAD = "upload"
CMD_REMOVE = "remove"
CMD_EXIT = "exit"

_ARITY = {CMD_UPLOAD: 2, CMD_REMOVE: 1}


# ---------------------------------------------------------------------------
# Status lines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Status:
    """A parsed ``1|...`` / ``0|...`` line."""

    ok: bool
    message: str

    @property
    def is_completion(self) -> bool:
        """True if this status retires the in-flight operation."""
        if self.ok:
            return self.message in (UPLOAD_SUCCEEDED, REMOVE_SUCCEEDED)
        return self.message != SESSION_LOST


def format_status(ok: bool, message: str) -> str:
    # Keep status lines on one line.
    message = " ".join(message.splitlines())
    return f"{1 if ok else 0}|{message}"


def parse_status(line: str) -> Status | None:
    """Parse a status line; return ``None`` for anything else."""
    if line.startswith("1|"):
        return Status(True, line[2:])
    if line.startswith("0|"):
        return Status(False, line[2:])
    return None


# ---------------------------------------------------------------------------
# Progress lines
# ---------------------------------------------------------------------------


def format_progress(remote_path: str, percent: int) -> str:
    return f"{PROGRESS_PREFIX}{remote_path}|{percent}"


def parse_progress(line: str) -> tuple[str, int] | None:
    """Parse ``PROGRESS|<file>|<percent>`` into ``(file, percent)``.

    Returns ``None`` when the line is not a well-formed progress line or the
    percentage is outside 0..100.
    """
    if not line.startswith(PROGRESS_PREFIX):
        return None
    body = line[len(PROGRESS_PREFIX):]
    file, sep, percent = body.rpartition("|")
    if not sep or not file:
        return None
    try:
        value = int(percent)
    except ValueError:
        return None
    if not 0 <= value <= 100:
        return None
    return file, value


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def format_command(command: str, *args: str) -> str:
    """Render a worker command line, quoting arguments where needed."""
    return " ".join([command, *(shlex.quote(a) for a in args)])


def parse_command(line: str) -> tuple[str, list[str]] | None:
    """Split a command line into ``(command, args)``.

    Returns ``None`` for blank lines, unbalanced quoting, unknown commands
    and wrong argument counts.  ``exit`` ignores trailing arguments.
    """
    try:
        tokens = shlex.split(line)
    except ValueError:
        return None
    if not tokens:
        return None
    command, args = tokens[0], tokens[1:]
    if command == CMD_EXIT:
        return command, []
    if _ARITY.get(command) != len(args):
        return None
    return command, args
