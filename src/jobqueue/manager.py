from __future__ import annotations

from typing import Any, Iterable

from jobqueue.config import Settings, get_settings
from jobqueue.drivers.base import BaseQueueDriver
from jobqueue.drivers.factory import DriverRegistry, build_driver_from_settings
from jobqueue.errors import ConfigurationError
from jobqueue.jobs.base import Job
from jobqueue.jobs.registry import JobRegistry
from jobqueue.utils.log import logger
from jobqueue.worker import QueueWorker, WorkerConfig


class QueueManager:
    """
    Enqueue facade for the rest of the application.

    Collaborators call `dispatch(job, delay_s=...)`; which backend stores the
    job is decided by the registered drivers (first registered = default).
    """

    def __init__(self, registry: JobRegistry | None = None) -> None:
        self.registry = registry or JobRegistry()
        self._drivers = DriverRegistry()

    @classmethod
    def from_settings(
        cls, registry: JobRegistry | None = None, *, settings: Settings | None = None
    ) -> QueueManager:
        s = settings or get_settings()
        mgr = cls(registry)
        driver = build_driver_from_settings(mgr.registry, settings=s)
        mgr.register_driver(str(s.queue_driver), driver)
        return mgr

    # --- drivers ---
    def register_driver(self, name: str, driver: BaseQueueDriver) -> None:
        self._drivers.register(name, driver)

    def set_default_driver(self, name: str) -> None:
        self._drivers.set_default(name)

    def driver(self, name: str | None = None) -> BaseQueueDriver:
        return self._drivers.get(name)

    @property
    def default_driver_name(self) -> str | None:
        return self._drivers.default_name

    @property
    def driver_names(self) -> list[str]:
        return self._drivers.names()

    def has_driver(self, name: str) -> bool:
        return self._drivers.has(name)

    # --- enqueue ---
    async def dispatch(self, job: Job, *, delay_s: float | None = None, driver: str | None = None) -> str:
        """Push `job`; backend errors (e.g. ConnectivityError) propagate."""
        drv = self.driver(driver)
        try:
            return await drv.push(job, delay_s=delay_s)
        except Exception as ex:
            logger.error(
                "queue_dispatch_failed",
                driver=drv.name,
                job_type=job.job_type,
                error=f"{type(ex).__name__}: {ex}",
            )
            raise

    async def dispatch_batch(
        self, jobs: Iterable[Job], *, delay_s: float | None = None, driver: str | None = None
    ) -> list[str]:
        return [await self.dispatch(j, delay_s=delay_s, driver=driver) for j in jobs]

    async def process(self, driver: str | None = None) -> bool:
        """One `process()` round on a driver; errors are logged, never raised."""
        try:
            return await self.driver(driver).process()
        except Exception as ex:
            logger.warning("queue_process_error", driver=driver or self.default_driver_name, error=str(ex))
            return False

    async def start_worker(self, *, driver: str | None = None, **policy: Any) -> QueueWorker:
        """Build a worker from WorkerConfig keyword args and start it."""
        worker = QueueWorker(self.driver(driver), WorkerConfig(**policy))
        await worker.start()
        return worker

    # --- dead letters ---
    async def retry_failed(self, job_id: str, *, driver: str | None = None) -> str | None:
        """
        Take a dead-lettered job out of the store and dispatch it again.

        Returns the new job id, or None when no such record exists. If the job
        type can't be rebuilt the record is put back and the error raised.
        """
        drv = self.driver(driver)
        handler = drv.dlq_handler
        if handler is None:
            raise ConfigurationError(f"Driver {drv.name!r} has no dead-letter handler")
        record = await handler.retry(job_id)
        if record is None:
            return None
        try:
            job = self.registry.create(record.job_type, record.payload)
        except ConfigurationError:
            await handler.store.store(record)
            raise
        new_id = await self.dispatch(job, driver=driver)
        logger.info("dlq_retried", old_job_id=record.id, new_job_id=new_id, job_type=record.job_type)
        return new_id

    # --- stats / lifecycle ---
    async def get_stats(self) -> dict[str, Any]:
        drivers: dict[str, Any] = {}
        for name, drv in self._drivers.items():
            drivers[name] = await drv.get_stats()
        return {
            "default_driver": self.default_driver_name,
            "drivers": drivers,
            "registry": self.registry.get_stats(),
        }

    def reset_metrics(self) -> None:
        for _, drv in self._drivers.items():
            if drv.metrics is not None:
                drv.metrics.reset()

    async def close(self) -> None:
        for name, drv in self._drivers.items():
            try:
                await drv.close()
            except Exception as ex:
                logger.warning("queue_driver_close_failed", driver=name, error=str(ex))
