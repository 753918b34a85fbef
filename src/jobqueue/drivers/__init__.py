from __future__ import annotations

from jobqueue.drivers.base import BaseQueueDriver, DriverConfig, JobListener
from jobqueue.drivers.factory import (
    DRIVER_TYPES,
    DriverRegistry,
    build_driver_from_settings,
    create_driver,
)
from jobqueue.drivers.file import FileStorageDriver
from jobqueue.drivers.memory import InMemoryDriver
from jobqueue.drivers.redis_driver import RedisStorageDriver
from jobqueue.drivers.sync_driver import SynchronousDriver

__all__ = [
    "DRIVER_TYPES",
    "BaseQueueDriver",
    "DriverConfig",
    "DriverRegistry",
    "FileStorageDriver",
    "InMemoryDriver",
    "JobListener",
    "RedisStorageDriver",
    "SynchronousDriver",
    "build_driver_from_settings",
    "create_driver",
]
