"""Local/remote path normalisation and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects empty paths and paths that contain null bytes or path-traversal
    sequences (``..``).
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()


def remote_path_for(local_path: str, working_root: str, remote_base: str) -> str:
    """Map *local_path* under *working_root* onto *remote_base*.

    Example::

        >>> remote_path_for("/proj/src/a.txt", "/proj", "/srv/app")
        '/srv/app/src/a.txt'

    Raises:
        ValueError: *local_path* is not inside *working_root*.
    """
    local = normalize_local_path(local_path)
    root = normalize_local_path(working_root)
    try:
        relative = local.relative_to(root)
    except ValueError:
        raise ValueError(f"{local_path} is not inside working root {working_root}") from None

    parts = relative.parts
    if not parts:
        return remote_base
    return posix_join(remote_base, *parts)


def relative_to_base(remote_path: str, remote_base: str) -> str:
    """Return *remote_path* relative to *remote_base*, or unchanged if outside it."""
    base = remote_base.rstrip("/") or "/"
    if remote_path == base:
        return posixpath.basename(remote_path) or remote_path
    prefix = base if base.endswith("/") else base + "/"
    if remote_path.startswith(prefix):
        return remote_path[len(prefix):]
    return remote_path


def get_path_prefixes(path: str) -> list[str]:
    """Return every cumulative prefix of a POSIX *path*, shortest first.

    Example::

        >>> get_path_prefixes("/srv/app/static")
        ['/srv', '/srv/app', '/srv/app/static']
        >>> get_path_prefixes("site/static")
        ['site', 'site/static']
    """
    parts = [p for p in path.split("/") if p]
    cumulative = "/" if path.startswith("/") else ""
    prefixes: list[str] = []
    for part in parts:
        cumulative = posixpath.join(cumulative, part) if cumulative else part
        prefixes.append(cumulative)
    return prefixes
