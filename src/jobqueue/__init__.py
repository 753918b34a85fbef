"""
Background job queue engine.

Jobs are pushed to a storage driver (sync, memory, file, redis), executed
with timeout/retry semantics by a worker loop, and dead-lettered once their
retries are exhausted.
"""

from __future__ import annotations

from jobqueue.dlq import FailedJob, FailedJobHandler, FileDeadLetterStore, InMemoryDeadLetterStore
from jobqueue.drivers import (
    BaseQueueDriver,
    DriverConfig,
    FileStorageDriver,
    InMemoryDriver,
    RedisStorageDriver,
    SynchronousDriver,
    build_driver_from_settings,
    create_driver,
)
from jobqueue.errors import (
    ConfigurationError,
    ConnectivityError,
    JobNotRegisteredError,
    JobTimeoutError,
    QueueError,
)
from jobqueue.jobs import CallableJob, Job, JobContext, JobRegistry, JobStatus
from jobqueue.manager import QueueManager
from jobqueue.middleware import MiddlewarePipeline
from jobqueue.ops.metrics import QueueMetrics
from jobqueue.worker import QueueWorker, WorkerConfig, WorkerPool

__all__ = [
    "BaseQueueDriver",
    "CallableJob",
    "ConfigurationError",
    "ConnectivityError",
    "DriverConfig",
    "FailedJob",
    "FailedJobHandler",
    "FileDeadLetterStore",
    "FileStorageDriver",
    "InMemoryDeadLetterStore",
    "InMemoryDriver",
    "Job",
    "JobContext",
    "JobNotRegisteredError",
    "JobRegistry",
    "JobStatus",
    "JobTimeoutError",
    "MiddlewarePipeline",
    "QueueError",
    "QueueManager",
    "QueueMetrics",
    "QueueWorker",
    "RedisStorageDriver",
    "SynchronousDriver",
    "WorkerConfig",
    "WorkerPool",
    "build_driver_from_settings",
    "create_driver",
]
