from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from jobqueue.errors import InvalidTransitionError
from jobqueue.jobs.base import Job


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    TIMED_OUT = "timedOut"
    DEAD_LETTERED = "deadLettered"


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT}
    ),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING, JobStatus.DEAD_LETTERED}),
    JobStatus.TIMED_OUT: frozenset({JobStatus.RETRYING, JobStatus.DEAD_LETTERED}),
    JobStatus.RETRYING: frozenset({JobStatus.PENDING, JobStatus.DEAD_LETTERED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD_LETTERED})


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in _TRANSITIONS[JobStatus(current)]


@dataclass(slots=True)
class JobContext:
    """
    Engine-owned wrapper around a Job.

    Invariants:
      - `attempts` only grows, via `begin_attempt()`
      - `status` only moves forward (see `_TRANSITIONS`)
      - a context scheduled in the future is never ready
    """

    id: str
    job: Job
    queued_at: datetime = field(default_factory=now_utc)
    scheduled_for: datetime | None = None
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
    error: str | None = None
    stack_trace: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def job_type(self) -> str:
        return self.job.job_type

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_ready(self, now: datetime | None = None) -> bool:
        if self.scheduled_for is None:
            return True
        return (now or now_utc()) >= self.scheduled_for

    def transition(self, target: JobStatus) -> None:
        target = JobStatus(target)
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target

    def begin_attempt(self) -> None:
        """pending -> processing, and count the attempt."""
        self.transition(JobStatus.PROCESSING)
        self.attempts += 1
        self.error = None
        self.stack_trace = None

    def record_error(self, error: str, stack_trace: str | None) -> None:
        self.error = str(error or "unknown error")
        self.stack_trace = stack_trace or None

    def reschedule(self, delay_s: float, *, now: datetime | None = None) -> None:
        """retrying -> pending, not ready before now + delay_s."""
        when = (now or now_utc()) + timedelta(seconds=max(0.0, float(delay_s)))
        self.scheduled_for = when
        self.metadata["scheduled_for"] = when.isoformat()
        self.metadata["retry_count"] = int(self.attempts)
        self.transition(JobStatus.PENDING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "queued_at": self.queued_at.isoformat(),
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "attempts": int(self.attempts),
            "status": self.status.value,
            "error": self.error,
            "stack_trace": self.stack_trace,
            "metadata": dict(self.metadata),
        }
