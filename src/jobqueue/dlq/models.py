from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from jobqueue.jobs.envelope import parse_iso


@dataclass(frozen=True, slots=True)
class FailedJob:
    """A permanently failed job, as kept by the dead-letter store."""

    id: str
    job_type: str
    payload: dict[str, Any]
    error: str
    failed_at: datetime
    attempts: int
    stack_trace: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "jobType": self.job_type,
            "payload": dict(self.payload),
            "error": self.error,
            "stackTrace": self.stack_trace,
            "failedAt": self.failed_at.astimezone(timezone.utc).isoformat(),
            "attempts": int(self.attempts),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FailedJob:
        dd = dict(d)
        return cls(
            id=str(dd.get("id") or ""),
            job_type=str(dd.get("jobType") or ""),
            payload=dict(dd.get("payload") or {}),
            error=str(dd.get("error") or ""),
            stack_trace=(str(dd["stackTrace"]) if dd.get("stackTrace") else None),
            failed_at=parse_iso(dd.get("failedAt")) or datetime.now(tz=timezone.utc),
            attempts=int(dd.get("attempts") or 0),
            metadata=dict(dd.get("metadata") or {}),
        )
