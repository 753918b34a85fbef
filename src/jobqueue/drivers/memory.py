from __future__ import annotations

from typing import Any

from jobqueue.drivers.base import BaseQueueDriver, DriverConfig
from jobqueue.jobs.base import Job
from jobqueue.jobs.context import JobContext, now_utc
from jobqueue.utils.log import logger


class InMemoryDriver(BaseQueueDriver):
    """
    Process-local FIFO of job contexts.

    - `process()` runs the first ready context that isn't already in flight
    - a retried context stays in place with a later `scheduled_for`
    - completed / dead-lettered contexts are dropped
    Jobs are lost on restart.
    """

    def __init__(self, config: DriverConfig, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self._queue: list[JobContext] = []
        self._in_flight: set[str] = set()

    async def push(self, job: Job, *, delay_s: float | None = None) -> str:
        ctx = self.create_job_context(job, delay_s)
        self._queue.append(ctx)
        m = self._m
        if m is not None:
            m.job_queued(ctx.job_type)
            m.record_queue_depth(len(self._queue))
        logger.info("queue_push", queue_mode="memory", job_id=ctx.id, job_type=ctx.job_type, delay_s=delay_s)
        return ctx.id

    def _next_ready(self) -> JobContext | None:
        now = now_utc()
        for ctx in self._queue:
            if ctx.id in self._in_flight:
                continue
            if ctx.is_ready(now):
                return ctx
        return None

    async def process(self) -> bool:
        ctx = self._next_ready()
        if ctx is None:
            return False
        self._in_flight.add(ctx.id)
        try:
            await self.execute_job(ctx)
        finally:
            self._in_flight.discard(ctx.id)
            if ctx.is_terminal and ctx in self._queue:
                self._queue.remove(ctx)
            m = self._m
            if m is not None:
                m.record_queue_depth(len(self._queue))
        return True

    async def retry_job(self, ctx: JobContext, delay_s: float) -> None:
        # still in the list; only its readiness moves
        ctx.reschedule(delay_s)

    async def clear(self) -> None:
        self._queue.clear()
        self._in_flight.clear()
        m = self._m
        if m is not None:
            m.record_queue_depth(0)

    @property
    def pending_jobs(self) -> tuple[JobContext, ...]:
        return tuple(self._queue)

    @property
    def pending_jobs_count(self) -> int:
        return len(self._queue)

    @property
    def is_empty(self) -> bool:
        return not self._queue

    async def get_stats(self) -> dict[str, Any]:
        stats = await super().get_stats()
        now = now_utc()
        ready = sum(1 for c in self._queue if c.is_ready(now))
        stats.update(
            {
                "queue_depth": len(self._queue),
                "processing_count": len(self._in_flight),
                "pending_count": len(self._queue) - len(self._in_flight),
                "ready_jobs": ready,
                "delayed_jobs": len(self._queue) - ready,
                "total_jobs": len(self._queue),
            }
        )
        return stats
