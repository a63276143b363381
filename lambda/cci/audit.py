"""
Audit trail primitive - append-only histories and the engine clock.

Status history, calculation history, and payment attempts are tuples of
frozen entries. Writers never touch existing entries: they build a new
tuple with the entry appended and commit it under a version check.
"""

from datetime import datetime, timezone
from typing import Sequence, TypeVar

from cci.models import StateConflictError

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current time. Every module reads time through this."""
    return datetime.now(timezone.utc)


def append(history: Sequence[T], entry: T) -> tuple[T, ...]:
    """Returns a new history with entry at the end."""
    return tuple(history) + (entry,)


def latest(history: Sequence[T]) -> T | None:
    """Current state of a history, or None if nothing was ever written."""
    if not history:
        return None
    return history[-1]


def ensure_extends(before: Sequence[T], after: Sequence[T]) -> None:
    """
    Verifies `after` is `before` plus appended entries.

    Raises:
        StateConflictError: If any existing entry was dropped, reordered,
            or changed.
    """
    if len(after) < len(before) or tuple(after[: len(before)]) != tuple(before):
        raise StateConflictError("Audit history was rewritten instead of appended")
