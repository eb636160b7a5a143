"""Job lifecycle states and the transitions each actor may make.

The full state machine is owned by the job-management API. The engine only
claims queued jobs (PENDING -> RUNNING) and finishes them
(RUNNING -> COMPLETED / FAILED); pausing, resuming and cancelling are made by
the API and observed by the engine through the cancellation token.
"""

from enum import Enum
from typing import Dict, FrozenSet

from .utils.errors import InvalidTransitionError


class JobStatus(str, Enum):
    """Lifecycle status of a migration or backup job."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED)


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.PAUSED, JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
}

# Subset the execution engine is authorized to make.
ENGINE_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
}


def can_transition(current: JobStatus, target: JobStatus, actor: str = "engine") -> bool:
    """Check whether `actor` may move a job from `current` to `target`."""
    table = ENGINE_TRANSITIONS if actor == "engine" else TRANSITIONS
    return target in table.get(current, frozenset())


def validate_transition(current: JobStatus, target: JobStatus, actor: str = "engine") -> JobStatus:
    """Return `target` if the transition is allowed, else raise.

    Raises:
        InvalidTransitionError: If the transition is not allowed for the actor
    """
    if not can_transition(current, target, actor):
        raise InvalidTransitionError(current.value, target.value, actor)
    return target
