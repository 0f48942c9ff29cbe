"""Queued operations and the FIFO queue that owns them."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum, auto

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OperationKind(Enum):
    """What the worker should do with an operation's path."""

    UPLOAD = auto()
    REMOVE = auto()

    @classmethod
    def parse(cls, value: "OperationKind | str") -> "OperationKind":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown operation kind: {value!r}") from None


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


@dataclass
class Operation:
    """One upload or remove waiting in the queue."""

    id: int
    kind: OperationKind
    local_path: str
    working_root: str
    processing: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass
class ProgressSnapshot:
    """Progress of the in-flight upload, as last reported by the worker."""

    file: str | None = None
    percent: int | None = None

    def reset(self) -> None:
        self.file = None
        self.percent = None


# ---------------------------------------------------------------------------
# OperationQueue
# ---------------------------------------------------------------------------


class OperationQueue:
    """Strict FIFO of :class:`Operation` with at most one item in flight.

    Only the head may be marked as processing, and a processing item can
    only leave the queue through :meth:`retire_head`.
    """

    def __init__(self) -> None:
        self._items: list[Operation] = []
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def add(self, kind: OperationKind, local_path: str, working_root: str) -> Operation:
        """Append a new operation and return it."""
        op = Operation(
            id=next(self._ids),
            kind=kind,
            local_path=local_path,
            working_root=working_root,
        )
        self._items.append(op)
        logger.info("Queued %s #%d: %s", kind.name, op.id, local_path)
        return op

    def head(self) -> Operation | None:
        return self._items[0] if self._items else None

    def current(self) -> Operation | None:
        """Return the head if it is being processed."""
        head = self.head()
        return head if head is not None and head.processing else None

    def mark_head_processing(self) -> Operation:
        head = self.head()
        if head is None:
            raise IndexError("mark_head_processing on an empty queue")
        head.processing = True
        return head

    def retire_head(self) -> Operation | None:
        """Remove and return the head (processing or not)."""
        if not self._items:
            return None
        return self._items.pop(0)

    def cancel(self, op_id: int) -> bool:
        """Remove the non-processing operation *op_id*; False if absent or in flight."""
        for index, op in enumerate(self._items):
            if op.id != op_id:
                continue
            if op.processing:
                logger.warning("Cannot cancel #%d: already in flight", op_id)
                return False
            del self._items[index]
            logger.info("Cancelled %s #%d", op.kind.name, op_id)
            return True
        return False

    def clear_pending(self) -> int:
        """Drop every non-processing operation; return how many were dropped."""
        kept = [op for op in self._items if op.processing]
        dropped = len(self._items) - len(kept)
        self._items = kept
        if dropped:
            logger.info("Cleared %d pending operation(s)", dropped)
        return dropped

    def reset_processing(self) -> None:
        """Mark every operation as not processing so the head is resent."""
        for op in self._items:
            op.processing = False

    def snapshot(self) -> list[Operation]:
        """Return copies of the queued operations in order."""
        return [replace(op) for op in self._items]
