"""
Job lifecycle rules.

The graph below is the only way a job may move between statuses:

    QUEUED -> PROCESSING -> SUCCESS | WATERMARKED | FAILED
    FAILED -> RETRIED -> QUEUED
    FAILED -> DEAD

SUCCESS, WATERMARKED and DEAD are terminal. Workers use ``require_transition``
to guard their own progress; the log broadcaster uses ``supersedes`` to decide
whether an event that arrives late or twice may overwrite what is stored.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional, Tuple

from .errors import IllegalTransitionError
from .models import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.SUCCESS, JobStatus.WATERMARKED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RETRIED, JobStatus.DEAD}),
    JobStatus.RETRIED: frozenset({JobStatus.QUEUED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.WATERMARKED: frozenset(),
    JobStatus.DEAD: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Phase order inside one retry count. RETRIED carries the already incremented
# count, so it opens the next attempt rather than closing the previous one.
_PHASE: Dict[JobStatus, int] = {
    JobStatus.RETRIED: 0,
    JobStatus.QUEUED: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.FAILED: 3,
}
_TERMINAL_PHASE = 9


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    return requested in TRANSITIONS[current]


def require_transition(current: JobStatus, requested: JobStatus) -> JobStatus:
    """Return ``requested`` if the lifecycle allows it, raise otherwise."""
    if not can_transition(current, requested):
        raise IllegalTransitionError(current.value, requested.value)
    return requested


def lifecycle_position(status: JobStatus, retries: int) -> Tuple[int, int]:
    """Total order of (status, retries) pairs along a job's lifetime."""
    if is_terminal(status):
        return (retries, _TERMINAL_PHASE)
    return (retries, _PHASE[status])


def supersedes(
    current_status: Optional[JobStatus],
    current_retries: int,
    incoming_status: JobStatus,
    incoming_retries: int,
) -> bool:
    """
    Decide whether an incoming status may replace the stored one.

    Nothing leaves a terminal status, and otherwise the incoming status must be
    strictly further along the lifecycle. Equal positions are duplicates.
    """
    if current_status is None:
        return True
    if is_terminal(current_status):
        return False
    return lifecycle_position(incoming_status, incoming_retries) > lifecycle_position(
        current_status, current_retries
    )
