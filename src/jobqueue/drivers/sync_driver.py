from __future__ import annotations

import asyncio
from typing import Any

from jobqueue.drivers.base import BaseQueueDriver, DriverConfig
from jobqueue.jobs.base import Job
from jobqueue.jobs.context import JobContext
from jobqueue.utils.log import job_id_var, logger


class SynchronousDriver(BaseQueueDriver):
    """
    Runs each job inline inside `push()`.

    No queue, no retries, no dead-lettering and no metrics: whatever the job
    raises is raised to the caller of `push()`. Meant for tests and scripts.
    """

    def __init__(self, config: DriverConfig, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        self.executed = 0

    async def push(self, job: Job, *, delay_s: float | None = None) -> str:
        ctx = self.create_job_context(job, delay_s)
        if delay_s is not None and float(delay_s) > 0:
            await asyncio.sleep(float(delay_s))
        token = job_id_var.set(ctx.id)
        try:
            logger.debug("sync_job_run", job_type=ctx.job_type)
            await job.run()
        finally:
            job_id_var.reset(token)
        self.executed += 1
        return ctx.id

    async def process(self) -> bool:
        return False

    async def retry_job(self, ctx: JobContext, delay_s: float) -> None:
        ctx.reschedule(delay_s)

    async def clear(self) -> None:
        return None

    async def get_stats(self) -> dict[str, Any]:
        stats = await super().get_stats()
        stats.update({"execution_mode": "synchronous", "queue_depth": 0, "executed": self.executed})
        return stats
