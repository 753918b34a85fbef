"""
Stored job record format (file and redis drivers).

    {
      "id": "...", "type": "...", "payload": {...},
      "scheduledAt": ISO-8601, "createdAt": ISO-8601,
      "attempts": int, "maxRetries": int,
      "metadata": {...}            # optional
    }

`scheduledAt` equals `createdAt` for jobs that were ready on push.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from jobqueue.errors import JobDeserializationError
from jobqueue.jobs.context import JobContext, JobStatus, now_utc
from jobqueue.jobs.registry import JobRegistry


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_envelope(ctx: JobContext, *, max_retries: int | None = None, with_metadata: bool = True) -> dict[str, Any]:
    scheduled = ctx.scheduled_for or ctx.queued_at
    out: dict[str, Any] = {
        "id": ctx.id,
        "type": ctx.job_type,
        "payload": ctx.job.serialize(),
        "scheduledAt": _iso(scheduled),
        "createdAt": _iso(ctx.queued_at),
        "attempts": int(ctx.attempts),
        "maxRetries": int(max_retries if max_retries is not None else (ctx.job.max_retries or 0)),
    }
    if with_metadata:
        out["metadata"] = dict(ctx.metadata)
    return out


def from_envelope(data: dict[str, Any], registry: JobRegistry) -> JobContext:
    """
    Rebuild a pending context from a stored record.

    Unknown job types come back as `UnresolvedJob` (see `JobRegistry.resolve`).
    A record missing `id`/`type` raises `JobDeserializationError`.
    """
    if not isinstance(data, dict):
        raise JobDeserializationError("?", f"record is {type(data).__name__}, expected object")
    jid = str(data.get("id") or "")
    jtype = str(data.get("type") or "")
    if not jid or not jtype:
        raise JobDeserializationError(jtype or "?", "record is missing id/type")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise JobDeserializationError(jtype, "payload is not an object")

    try:
        created = parse_iso(data.get("createdAt")) or now_utc()
        scheduled = parse_iso(data.get("scheduledAt"))
    except ValueError as ex:
        raise JobDeserializationError(jtype, f"bad timestamp: {ex}") from ex
    if scheduled is not None and scheduled <= created:
        scheduled = None

    return JobContext(
        id=jid,
        job=registry.resolve(jtype, payload),
        queued_at=created,
        scheduled_for=scheduled,
        attempts=max(0, int(data.get("attempts") or 0)),
        status=JobStatus.PENDING,
        metadata=dict(data.get("metadata") or {}),
    )
