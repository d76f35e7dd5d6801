"""
Lifecycle rules for search job entries.

    queued --> pending --> completed | error | timeout

Terminal states have no outgoing transitions.
"""

from dataclasses import replace

from search_relay.core.errors import InvalidTransitionError
from search_relay.services.job_store import TERMINAL_STATUSES, JobEntry, JobStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"pending"}),
    "pending": frozenset({"completed", "error", "timeout"}),
    "completed": frozenset(),
    "error": frozenset(),
    "timeout": frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(entry: JobEntry, target: JobStatus, now: float, **changes) -> JobEntry:
    """
    Return a copy of the entry moved to `target`.

    Sets the bookkeeping fields that go with each state: started_at on
    entering pending, finished_at on reaching a terminal state, and clears
    queue_position once the entry leaves the wait list.

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the move.
    """
    if not can_transition(entry.status, target):
        raise InvalidTransitionError(
            f"Cannot move entry {entry.entry_id} from {entry.status} to {target}"
        )

    if target == "pending":
        changes.setdefault("started_at", now)
    if is_terminal(target):
        changes.setdefault("finished_at", now)

    return replace(entry, status=target, queue_position=None, **changes)
