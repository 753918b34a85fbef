from __future__ import annotations

import json
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

from jobqueue.dlq.models import FailedJob
from jobqueue.dlq.store import DeadLetterStore
from jobqueue.utils.log import logger

DEFAULT_PRUNE_AGE_S = 7 * 24 * 3600.0
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _stack_text(stack: Any) -> str | None:
    if stack is None:
        return None
    if isinstance(stack, BaseException):
        return "".join(traceback.format_exception(type(stack), stack, stack.__traceback__))
    s = str(stack)
    return s or None


class FailedJobHandler:
    """
    Operations on top of a DeadLetterStore.

    `retry()` only takes the record out of the store; re-dispatching it is the
    caller's job (see `QueueManager.retry_failed`).
    """

    def __init__(self, store: DeadLetterStore) -> None:
        self._store = store

    @property
    def store(self) -> DeadLetterStore:
        return self._store

    async def record_failure(
        self,
        *,
        id: str,
        job_type: str,
        payload: dict[str, Any],
        error: Any,
        attempts: int,
        stack_trace: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> FailedJob:
        err = str(error or "").strip() or (type(error).__name__ if error is not None else "unknown error")
        record = FailedJob(
            id=str(id),
            job_type=str(job_type),
            payload=dict(payload or {}),
            error=err,
            stack_trace=_stack_text(stack_trace),
            failed_at=datetime.now(tz=timezone.utc),
            attempts=int(attempts),
            metadata=dict(metadata or {}),
        )
        await self._store.store(record)
        logger.info("dlq_recorded", job_id=record.id, job_type=record.job_type, attempts=record.attempts)
        return record

    async def retry(self, job_id: str) -> FailedJob | None:
        job = await self._store.get(job_id)
        if job is not None:
            await self._store.remove(job.id)
        return job

    async def retry_by_type(self, job_type: str) -> list[FailedJob]:
        jobs = await self._store.get_by_type(job_type)
        for j in jobs:
            await self._store.remove(j.id)
        return jobs

    async def prune(self, *, older_than_s: float | None = None) -> int:
        age = DEFAULT_PRUNE_AGE_S if older_than_s is None else float(older_than_s)
        cutoff = datetime.now(tz=timezone.utc) - timedelta(seconds=age)
        old = await self._store.get_by_date_range(_EPOCH, cutoff)
        for j in old:
            await self._store.remove(j.id)
        if old:
            logger.info("dlq_pruned", removed=len(old), older_than_s=age)
        return len(old)

    async def get_report(self) -> dict[str, Any]:
        stats = await self._store.get_stats()
        recent = await self._store.get_all(limit=10)
        return {"stats": stats, "recentFailures": [j.to_dict() for j in recent]}

    async def export_to_json(self, *, limit: int | None = None) -> str:
        jobs = await self._store.get_all(limit=limit)
        return json.dumps([j.to_dict() for j in jobs])
