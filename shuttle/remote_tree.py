"""Recursive remote-filesystem operations built on an SFTP client.

Only the primitives ``stat``, ``mkdir``, ``rmdir``, ``remove`` and
``listdir_attr`` of :class:`paramiko.SFTPClient` are used, so any object
exposing the same methods works.  Missing paths surface from paramiko as
:exc:`FileNotFoundError`; every other failure is an :exc:`OSError`.
"""

from __future__ import annotations

import logging
import stat

from shuttle.utils.path_helpers import get_path_prefixes, posix_join

logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o700
MAX_DEPTH = 64


class RemoteTreeError(Exception):
    """A remote directory operation failed; the message names the path."""


def _is_dir(attrs) -> bool:
    return attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode)


def _stat_or_none(sftp, path: str):
    try:
        return sftp.stat(path)
    except OSError:
        return None


def ensure_directory_chain(sftp, path: str) -> None:
    """Make sure *path* exists on the remote host as a directory.

    Every missing prefix is created with :data:`DIRECTORY_MODE`.  Existing
    directories are left alone; an existing non-directory anywhere along
    the chain is a collision.

    Raises:
        RemoteTreeError: A prefix is a file, or ``mkdir`` failed.
    """
    attrs = _stat_or_none(sftp, path)
    if attrs is not None and _is_dir(attrs):
        return

    for prefix in get_path_prefixes(path):
        attrs = _stat_or_none(sftp, prefix)
        if attrs is not None:
            if attrs.st_mode is not None and not _is_dir(attrs):
                raise RemoteTreeError(f"Path exists and is not a directory: {prefix}")
            continue
        try:
            sftp.mkdir(prefix, DIRECTORY_MODE)
        except OSError as exc:
            raise RemoteTreeError(f"Failed to create directory: {prefix} ({exc})") from exc
        logger.debug("Created remote directory %s", prefix)


def remove_path_recursive(sftp, path: str, _depth: int = 0) -> None:
    """Delete *path* on the remote host, descending into directories.

    A path that does not exist counts as already removed.  Children are
    removed depth-first before their parent; the first failing child aborts
    the whole operation.

    Raises:
        RemoteTreeError: Something could not be removed, or the tree is
            deeper than :data:`MAX_DEPTH`.
    """
    if _depth > MAX_DEPTH:
        raise RemoteTreeError(f"Maximum directory depth exceeded at: {path}")

    try:
        sftp.stat(path)
    except FileNotFoundError:
        logger.debug("Nothing to remove at %s", path)
        return
    except OSError:
        pass  # still try the removal below

    try:
        sftp.remove(path)
        logger.debug("Removed remote file %s", path)
        return
    except OSError:
        pass

    try:
        entries = sftp.listdir_attr(path)
    except OSError as exc:
        try:
            sftp.rmdir(path)
            return
        except OSError:
            raise RemoteTreeError(f"Failed to open or remove path: {path}") from exc

    for attrs in entries:
        if attrs.filename in (".", ".."):
            continue
        child = posix_join(path, attrs.filename)
        if _is_dir(attrs):
            remove_path_recursive(sftp, child, _depth + 1)
        else:
            try:
                sftp.remove(child)
            except OSError as exc:
                raise RemoteTreeError(f"Failed to delete file: {child}") from exc

    try:
        sftp.rmdir(path)
    except OSError as exc:
        raise RemoteTreeError(f"Failed to remove directory: {path}") from exc
    logger.debug("Removed remote directory %s", path)
