from __future__ import annotations

from enum import Enum

from castline.core.errors import InvalidTransitionError


class BroadcastChannel(str, Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# failed -> processing is only taken by the reprocess path and requires failed recipients.
_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return JobStatus(status) in TERMINAL_JOB_STATUSES


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in _JOB_TRANSITIONS[JobStatus(current)]


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move broadcast job from {current} to {target}")


def final_status(*, failed_count: int) -> JobStatus:
    # A finished pass with any failed recipient stays flagged for retry.
    return JobStatus.FAILED if failed_count > 0 else JobStatus.COMPLETED
