from __future__ import annotations

# Entry lifecycle.
#
#   pending ──> in_progress ──> completed
#      │             │
#      └─────────────┴──> cancelled
#
# pending -> completed is also allowed (served without being marked as
# started). completed and cancelled are terminal.

from typing import Any

from .errors import InvalidStatus, InvalidTransition
from .models import EntryStatus

TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.pending: frozenset(
        {EntryStatus.in_progress, EntryStatus.completed, EntryStatus.cancelled}
    ),
    EntryStatus.in_progress: frozenset({EntryStatus.completed, EntryStatus.cancelled}),
    EntryStatus.completed: frozenset(),
    EntryStatus.cancelled: frozenset(),
}


def parse_status(value: Any) -> EntryStatus:
    """Accept `in_progress` and the legacy `in-progress` spelling."""
    if isinstance(value, EntryStatus):
        return value
    text = str(value or "").strip().lower().replace("-", "_")
    try:
        return EntryStatus(text)
    except ValueError:
        raise InvalidStatus(f"unknown status {value!r}") from None


def can_transition(current: EntryStatus, target: EntryStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: EntryStatus, target: EntryStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)
