"""
Explicit transition tables for job lifecycles.

Retries are data (``retry_count``) moving through these tables, not
recursive calls, so retry depth is bounded and easy to test.
"""

from enum import StrEnum
from typing import TypeVar

from kvqueue.constants import FailureStatus, JobStatus

S = TypeVar("S", bound=StrEnum)


class InvalidTransitionError(Exception):
    """Raised when a lifecycle transition is not in the table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current} -> {target}")


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DELAYED: frozenset({JobStatus.QUEUED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED}
    ),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}

FAILURE_TRANSITIONS: dict[FailureStatus, frozenset[FailureStatus]] = {
    FailureStatus.FAILED: frozenset(
        {FailureStatus.SCHEDULED_RETRY, FailureStatus.PERMANENT_FAILURE}
    ),
    FailureStatus.SCHEDULED_RETRY: frozenset(
        {FailureStatus.RETRYING, FailureStatus.PERMANENT_FAILURE}
    ),
    FailureStatus.RETRYING: frozenset(
        {FailureStatus.COMPLETED, FailureStatus.FAILED}
    ),
    FailureStatus.COMPLETED: frozenset(),
    FailureStatus.PERMANENT_FAILURE: frozenset(),
}

TERMINAL_FAILURE_STATES = frozenset(
    status for status, targets in FAILURE_TRANSITIONS.items() if not targets
)


def _advance(table: dict[S, frozenset[S]], current: S, target: S) -> S:
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(current, target)
    return target


def can_advance_job(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a queue-side transition is allowed."""
    return target in JOB_TRANSITIONS.get(current, frozenset())


def advance_job(current: JobStatus, target: JobStatus) -> JobStatus:
    """
    Validate a queue-side transition.

    Args:
        current: Current job status.
        target: Desired job status.

    Returns:
        The target status.

    Raises:
        InvalidTransitionError: If the move is not in the table.
    """
    return _advance(JOB_TRANSITIONS, current, target)


def can_advance_failure(current: FailureStatus, target: FailureStatus) -> bool:
    """Check whether a dead-letter transition is allowed."""
    return target in FAILURE_TRANSITIONS.get(current, frozenset())


def advance_failure(current: FailureStatus, target: FailureStatus) -> FailureStatus:
    """
    Validate a dead-letter transition.

    Args:
        current: Current dead-letter status.
        target: Desired dead-letter status.

    Returns:
        The target status.

    Raises:
        InvalidTransitionError: If the move is not in the table.
    """
    return _advance(FAILURE_TRANSITIONS, current, target)


def parse_job_status(value: str | None) -> JobStatus | None:
    """Parse a stored job status, returning None for missing or unknown values."""
    if value is None:
        return None
    try:
        return JobStatus(value)
    except ValueError:
        return None


def parse_failure_status(value: str | None) -> FailureStatus | None:
    """Parse a stored dead-letter status, returning None for missing or unknown values."""
    if value is None:
        return None
    try:
        return FailureStatus(value)
    except ValueError:
        return None
