from __future__ import annotations

from typing import Any

from jobqueue.config import Settings, get_settings
from jobqueue.dlq.handler import FailedJobHandler
from jobqueue.dlq.store import build_dead_letter_store
from jobqueue.drivers.base import BaseQueueDriver, DriverConfig
from jobqueue.drivers.file import FileStorageDriver
from jobqueue.drivers.memory import InMemoryDriver
from jobqueue.drivers.redis_driver import RedisStorageDriver
from jobqueue.drivers.sync_driver import SynchronousDriver
from jobqueue.errors import ConfigurationError
from jobqueue.jobs.registry import JobRegistry
from jobqueue.middleware.builtin import LoggingMiddleware
from jobqueue.middleware.pipeline import MiddlewarePipeline
from jobqueue.ops.metrics import QueueMetrics
from jobqueue.utils.log import logger

DRIVER_TYPES: dict[str, type[BaseQueueDriver]] = {
    "sync": SynchronousDriver,
    "memory": InMemoryDriver,
    "file": FileStorageDriver,
    "redis": RedisStorageDriver,
}


class DriverRegistry:
    """Named driver instances; the first one registered is the default."""

    def __init__(self) -> None:
        self._drivers: dict[str, BaseQueueDriver] = {}
        self._default: str | None = None

    def register(self, name: str, driver: BaseQueueDriver) -> None:
        key = str(name or "").strip()
        if not key:
            raise ConfigurationError("Driver name must be non-empty")
        if key in self._drivers:
            raise ConfigurationError(f"Driver already registered: {key!r}")
        self._drivers[key] = driver
        if self._default is None:
            self._default = key

    def unregister(self, name: str) -> BaseQueueDriver:
        if name not in self._drivers:
            raise ConfigurationError(f"Driver not registered: {name!r}")
        if name == self._default:
            raise ConfigurationError(f"Cannot unregister the default driver {name!r}")
        return self._drivers.pop(name)

    def get(self, name: str | None = None) -> BaseQueueDriver:
        key = name or self._default
        if key is None:
            raise ConfigurationError("No queue driver registered")
        drv = self._drivers.get(key)
        if drv is None:
            raise ConfigurationError(f"Driver not registered: {key!r}")
        return drv

    def set_default(self, name: str) -> None:
        if name not in self._drivers:
            raise ConfigurationError(f"Driver not registered: {name!r}")
        self._default = name

    @property
    def default_name(self) -> str | None:
        return self._default

    def names(self) -> list[str]:
        return list(self._drivers.keys())

    def has(self, name: str) -> bool:
        return name in self._drivers

    def items(self) -> list[tuple[str, BaseQueueDriver]]:
        return list(self._drivers.items())

    def clear(self) -> None:
        self._drivers.clear()
        self._default = None


def create_driver(driver_type: str, config: DriverConfig, **kwargs: Any) -> BaseQueueDriver:
    kind = str(driver_type or "").strip().lower()
    cls = DRIVER_TYPES.get(kind)
    if cls is None:
        raise ConfigurationError(
            f"Unknown queue driver {driver_type!r} (expected one of {sorted(DRIVER_TYPES)})"
        )
    return cls(config, **kwargs)


def _driver_specific(kind: str, s: Settings) -> dict[str, Any]:
    if kind == "file":
        return {"storage_path": str(s.queue_storage_path), "file_lock": bool(s.queue_file_lock)}
    if kind == "redis":
        pw = s.secret.redis_password
        return {
            "queue": str(s.queue_name),
            "prefix": str(s.redis_queue_prefix or ""),
            "url": s.secret.redis_url,
            "host": str(s.redis_host),
            "port": int(s.redis_port),
            "db": int(s.redis_db),
            "password": pw.get_secret_value() if pw is not None else None,
            "block_timeout_s": float(s.redis_block_timeout_s),
            "promote_batch": int(s.redis_promote_batch),
        }
    return {}


def build_driver_from_settings(
    registry: JobRegistry | None = None,
    *,
    driver_type: str | None = None,
    settings: Settings | None = None,
    middleware: MiddlewarePipeline | None = None,
    **kwargs: Any,
) -> BaseQueueDriver:
    """
    Wire a driver with metrics, dead-letter handler and middleware from settings.

    - metrics only when QUEUE_TRACK_METRICS
    - DLQ handler only when QUEUE_USE_DLQ (memory or file store per DLQ_DRIVER)
    - middleware defaults to a logging-only pipeline
    """
    s = settings or get_settings()
    kind = str(driver_type or s.queue_driver).strip().lower()
    config = DriverConfig.from_settings(name=kind, settings=s, **_driver_specific(kind, s))

    metrics = QueueMetrics(driver=kind) if config.track_metrics else None
    dlq_handler = None
    if config.use_dlq:
        store = build_dead_letter_store(
            str(s.dlq_driver), path=s.public.resolved_dlq_path(), use_lock=bool(s.queue_file_lock)
        )
        dlq_handler = FailedJobHandler(store)
    if middleware is None and config.use_middleware:
        middleware = MiddlewarePipeline([LoggingMiddleware()])

    driver = create_driver(
        kind,
        config,
        metrics=metrics,
        dlq_handler=dlq_handler,
        middleware=middleware,
        registry=registry,
        **kwargs,
    )
    logger.info(
        "queue_driver_built",
        queue_mode=kind,
        track_metrics=config.track_metrics,
        use_dlq=config.use_dlq,
        use_middleware=config.use_middleware,
    )
    return driver
