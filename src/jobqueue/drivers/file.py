from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

from jobqueue.drivers.base import BaseQueueDriver, DriverConfig
from jobqueue.errors import JobDeserializationError
from jobqueue.jobs.base import Job
from jobqueue.jobs.context import JobContext, now_utc
from jobqueue.jobs.envelope import from_envelope
from jobqueue.utils.io import read_json_file, write_json_atomic
from jobqueue.utils.locks import file_lock
from jobqueue.utils.log import logger

JOBS_FILE = "jobs.json"

Records = list[dict[str, Any]]


def _settle(records: Records, ctx: JobContext, rec: dict[str, Any]) -> Records:
    """Drop a finished job's record, or replace it in place (append if gone)."""
    if ctx.is_terminal:
        return [r for r in records if r.get("id") != ctx.id]
    out = [rec if r.get("id") == ctx.id else r for r in records]
    if not any(r.get("id") == ctx.id for r in records):
        out.append(rec)
    return out


class FileStorageDriver(BaseQueueDriver):
    """
    FIFO queue stored in `<storage_path>/jobs.json`.

    - every mutation re-reads the file, changes the records it touches (by
      id) and rewrites it (temp file + replace) while holding
      `jobs.json.lock`, so several driver instances never drop each
      other's records
    - records whose type isn't registered are kept (as UnresolvedJob) and
      dead-letter when their turn comes; records that can't be decoded are
      logged and dropped on the next write

    Claiming is not coordinated: two processes can pick the same ready job
    (at-least-once delivery). Use the redis driver for several workers.
    """

    def __init__(self, config: DriverConfig, *, storage_path: Path | None = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        dsc = dict(config.driver_specific_config or {})
        self.storage_path = Path(storage_path or dsc.get("storage_path") or "./storage/queue")
        self.use_lock = bool(dsc.get("file_lock", True))
        self._in_flight: dict[str, JobContext] = {}
        self._mu = asyncio.Lock()

    @property
    def jobs_file(self) -> Path:
        return self.storage_path / JOBS_FILE

    @property
    def _lock_path(self) -> Path:
        return self.storage_path / f"{JOBS_FILE}.lock"

    # --- disk (called in a worker thread, under self._mu) ---
    def _decode(self) -> list[tuple[dict[str, Any], JobContext]]:
        """Stored records with their contexts; corrupt JSON propagates."""
        raw = read_json_file(self.jobs_file, [])
        if not isinstance(raw, list):
            logger.warning("queue_file_invalid", path=str(self.jobs_file), kind=type(raw).__name__)
            return []
        out: list[tuple[dict[str, Any], JobContext]] = []
        for rec in raw:
            try:
                ctx = from_envelope(rec, self.registry)
            except (JobDeserializationError, TypeError, ValueError) as ex:
                logger.warning("queue_record_skipped", path=str(self.jobs_file), error=str(ex))
                continue
            # a job this instance is running stays the live object
            out.append((rec, self._in_flight.get(ctx.id, ctx)))
        return out

    def _snapshot(self) -> list[JobContext]:
        with file_lock(self._lock_path, enabled=self.use_lock):
            return [ctx for _, ctx in self._decode()]

    def _rewrite(self, change: Callable[[Records], Records]) -> int:
        with file_lock(self._lock_path, enabled=self.use_lock):
            records = change([rec for rec, _ in self._decode()])
            write_json_atomic(self.jobs_file, records)
        return len(records)

    def _depth(self, n: int) -> None:
        m = self._m
        if m is not None:
            m.record_queue_depth(n)

    # --- contract ---
    async def push(self, job: Job, *, delay_s: float | None = None) -> str:
        ctx = self.create_job_context(job, delay_s)
        rec = self.envelope(ctx)
        async with self._mu:
            depth = await asyncio.to_thread(self._rewrite, lambda records: [*records, rec])
        m = self._m
        if m is not None:
            m.job_queued(ctx.job_type)
        self._depth(depth)
        logger.info("queue_push", queue_mode="file", job_id=ctx.id, job_type=ctx.job_type, delay_s=delay_s)
        return ctx.id

    def _next_ready(self, contexts: list[JobContext]) -> JobContext | None:
        now = now_utc()
        for ctx in contexts:
            if ctx.id not in self._in_flight and ctx.is_ready(now):
                return ctx
        return None

    async def process(self) -> bool:
        try:
            async with self._mu:
                ctx = self._next_ready(await asyncio.to_thread(self._snapshot))
                if ctx is None:
                    return False
                self._in_flight[ctx.id] = ctx
        except Exception as ex:
            logger.warning("queue_process_error", queue_mode="file", error=f"{type(ex).__name__}: {ex}")
            return False

        try:
            await self.execute_job(ctx)
        finally:
            async with self._mu:
                self._in_flight.pop(ctx.id, None)
                try:
                    rec = self.envelope(ctx)
                    depth = await asyncio.to_thread(self._rewrite, lambda records: _settle(records, ctx, rec))
                except Exception as ex:
                    logger.warning(
                        "queue_process_error",
                        queue_mode="file",
                        job_id=ctx.id,
                        error=f"{type(ex).__name__}: {ex}",
                    )
                else:
                    self._depth(depth)
        return True

    async def retry_job(self, ctx: JobContext, delay_s: float) -> None:
        # written back by process() once the attempt settles
        ctx.reschedule(delay_s)

    async def clear(self) -> None:
        async with self._mu:
            self._in_flight.clear()
            await asyncio.to_thread(self._rewrite, lambda records: [])
        self._depth(0)

    async def pending_jobs(self) -> list[JobContext]:
        async with self._mu:
            return await asyncio.to_thread(self._snapshot)

    async def pending_jobs_count(self) -> int:
        return len(await self.pending_jobs())

    async def get_stats(self) -> dict[str, Any]:
        contexts = await self.pending_jobs()
        stats = await super().get_stats()
        now = now_utc()
        ready = sum(1 for c in contexts if c.is_ready(now))
        stats.update(
            {
                "storage_path": str(self.storage_path),
                "file_exists": self.jobs_file.exists(),
                "total_jobs": len(contexts),
                "ready_jobs": ready,
                "delayed_jobs": len(contexts) - ready,
                "processing_count": len(self._in_flight),
            }
        )
        return stats
