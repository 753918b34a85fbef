from __future__ import annotations

import asyncio
import inspect
import itertools
import time
import traceback
from contextlib import suppress
from dataclasses import dataclass, replace
from typing import Any, Callable

from jobqueue.drivers.base import BaseQueueDriver, JobListener
from jobqueue.utils.log import logger, worker_id_var

_worker_seq = itertools.count(1)


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    """
    Worker loop policy.

    - max_jobs: stop after this many `process()` iterations (None = no limit)
    - delay_s: pause between iterations
    - timeout_s: stop once the loop has run this long (None = no limit)
    - run_in_background: `start()` returns at once; the loop is an asyncio.Task
    """

    max_jobs: int | None = None
    delay_s: float = 1.0
    timeout_s: float | None = None
    run_in_background: bool = False
    on_error: Callable[[BaseException, str], Any] | None = None
    on_job_start: Callable[..., Any] | None = None
    on_job_complete: Callable[..., Any] | None = None
    on_job_error: Callable[..., Any] | None = None
    on_shutdown: Callable[[], Any] | None = None

    def listener(self) -> JobListener | None:
        if not (self.on_job_start or self.on_job_complete or self.on_job_error):
            return None
        return JobListener(
            on_start=self.on_job_start,
            on_complete=self.on_job_complete,
            on_error=self.on_job_error,
        )


async def _call(cb: Callable[..., Any] | None, *args: Any) -> None:
    if cb is None:
        return
    res = cb(*args)
    if inspect.isawaitable(res):
        await res


class QueueWorker:
    """Polls `driver.process()` under a WorkerConfig policy."""

    def __init__(
        self,
        driver: BaseQueueDriver,
        config: WorkerConfig | None = None,
        *,
        worker_id: str | None = None,
        attach_listener: bool = True,
    ) -> None:
        self.driver = driver
        self.config = config or WorkerConfig()
        self.worker_id = str(worker_id or f"worker-{next(_worker_seq)}")
        self._attach_listener = bool(attach_listener)
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.processed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def _should_terminate(self, started: float) -> bool:
        cfg = self.config
        if cfg.max_jobs is not None and self.processed >= int(cfg.max_jobs):
            return True
        if cfg.timeout_s is not None and (time.monotonic() - started) >= float(cfg.timeout_s):
            return True
        return False

    async def _pause(self) -> None:
        delay = max(0.0, float(self.config.delay_s))
        if delay == 0:
            await asyncio.sleep(0)
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=delay)

    async def _loop(self) -> None:
        token = worker_id_var.set(self.worker_id)
        listener = self.config.listener() if self._attach_listener else None
        if listener is not None:
            self.driver.add_listener(listener)
        started = time.monotonic()
        logger.info(
            "worker_started",
            driver=self.driver.name,
            max_jobs=self.config.max_jobs,
            timeout_s=self.config.timeout_s,
        )
        try:
            while not self._stop.is_set():
                try:
                    await self.driver.process()
                except Exception as ex:
                    logger.warning("worker_process_error", error=f"{type(ex).__name__}: {ex}")
                    try:
                        await _call(self.config.on_error, ex, traceback.format_exc())
                    except Exception as cb_ex:
                        logger.warning("worker_on_error_failed", error=str(cb_ex))
                self.processed += 1
                if self._should_terminate(started):
                    break
                await self._pause()
        finally:
            self._running = False
            if listener is not None:
                self.driver.remove_listener(listener)
            logger.info("worker_stopped", iterations=self.processed)
            try:
                await _call(self.config.on_shutdown)
            finally:
                worker_id_var.reset(token)

    async def start(self) -> None:
        if self._running:
            raise RuntimeError(f"Worker {self.worker_id} is already running")
        self._stop.clear()
        self._running = True
        if self.config.run_in_background:
            self._task = asyncio.create_task(self._loop(), name=f"jobqueue.worker.{self.worker_id}")
            return
        await self._loop()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Ask the loop to exit after the current iteration and wait for it."""
        self._stop.set()
        await self.wait()


class WorkerPool:
    """N background workers sharing one driver."""

    def __init__(
        self, driver: BaseQueueDriver, worker_count: int = 4, config: WorkerConfig | None = None
    ) -> None:
        if int(worker_count) < 1:
            raise ValueError("worker_count must be >= 1")
        self.driver = driver
        self.worker_count = int(worker_count)
        self.config = replace(config or WorkerConfig(), run_in_background=True)
        self._workers: list[QueueWorker] = []
        self._listener: JobListener | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def _spawn(self) -> None:
        w = QueueWorker(self.driver, self.config, attach_listener=False)
        self._workers.append(w)
        await w.start()

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("Worker pool is already running")
        self._running = True
        # one listener for the pool, not one per worker
        self._listener = self.config.listener()
        if self._listener is not None:
            self.driver.add_listener(self._listener)
        for _ in range(self.worker_count):
            await self._spawn()
        logger.info("worker_pool_started", workers=self.worker_count, driver=self.driver.name)

    async def stop(self) -> None:
        if not self._running:
            return
        await asyncio.gather(*(w.stop() for w in self._workers), return_exceptions=True)
        self._workers.clear()
        if self._listener is not None:
            self.driver.remove_listener(self._listener)
            self._listener = None
        self._running = False
        logger.info("worker_pool_stopped", driver=self.driver.name)

    async def scale(self, worker_count: int) -> None:
        n = int(worker_count)
        if n < 1:
            raise ValueError("worker_count must be >= 1")
        if self._running:
            while len(self._workers) < n:
                await self._spawn()
            while len(self._workers) > n:
                await self._workers.pop().stop()
        self.worker_count = n
        logger.info("worker_pool_scaled", workers=n)

    def get_stats(self) -> dict[str, Any]:
        return {
            "worker_count": self.worker_count,
            "is_running": self._running,
            "active_workers": sum(1 for w in self._workers if w.is_running),
            "iterations": sum(w.processed for w in self._workers),
        }
