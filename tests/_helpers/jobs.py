from __future__ import annotations

import asyncio
import time
from typing import Any

from jobqueue.jobs.base import Job
from jobqueue.jobs.registry import JobRegistry

# Execution log shared by every helper job: (type_name, key) in run order.
RUNS: list[tuple[str, str]] = []
# Per-key failure budget for FlakyJob (survives rehydration).
_FLAKY_LEFT: dict[str, int] = {}


def reset_job_state() -> None:
    RUNS.clear()
    _FLAKY_LEFT.clear()


class RecordingJob(Job):
    type_name = "recording"

    def __init__(self, key: str) -> None:
        self.key = str(key)
        self.executed = False

    async def handle(self) -> str:
        self.executed = True
        RUNS.append((self.type_name, self.key))
        return self.key

    def serialize(self) -> dict[str, Any]:
        return {"key": self.key}


class FailingJob(Job):
    type_name = "failing"

    def __init__(
        self, key: str = "f", max_retries: int | None = 0, retry_delay_s: float | None = 0.0
    ) -> None:
        self.key = str(key)
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s

    async def handle(self) -> None:
        RUNS.append((self.type_name, self.key))
        raise RuntimeError(f"boom:{self.key}")

    def serialize(self) -> dict[str, Any]:
        return {"key": self.key, "max_retries": self.max_retries, "retry_delay_s": self.retry_delay_s}


class FlakyJob(Job):
    """Fails `failures` times (per key, across copies), then succeeds."""

    type_name = "flaky"
    retry_delay_s = 0.0

    def __init__(self, key: str, failures: int = 1) -> None:
        self.key = str(key)
        self.failures = int(failures)
        _FLAKY_LEFT.setdefault(self.key, self.failures)

    async def handle(self) -> str:
        RUNS.append((self.type_name, self.key))
        if _FLAKY_LEFT.get(self.key, 0) > 0:
            _FLAKY_LEFT[self.key] -= 1
            raise ValueError(f"flaky:{self.key}")
        return "ok"

    def serialize(self) -> dict[str, Any]:
        return {"key": self.key, "failures": self.failures}


class SlowJob(Job):
    type_name = "slow"
    max_retries = 0

    def __init__(self, sleep_s: float, timeout_s: float | None = None) -> None:
        self.sleep_s = float(sleep_s)
        self.timeout_s = timeout_s
        self.finished = False

    async def handle(self) -> None:
        await asyncio.sleep(self.sleep_s)
        self.finished = True

    def serialize(self) -> dict[str, Any]:
        return {"sleep_s": self.sleep_s, "timeout_s": self.timeout_s}


class BlockingJob(Job):
    """Plain (non-async) handle; runs in a worker thread."""

    type_name = "blocking"

    def __init__(self, key: str) -> None:
        self.key = str(key)

    def handle(self) -> str:
        time.sleep(0.01)
        RUNS.append((self.type_name, self.key))
        return self.key

    def serialize(self) -> dict[str, Any]:
        return {"key": self.key}


class EmailJob(Job):
    type_name = "send_email"
    retry_delay_s = 0.0

    def __init__(self, to: str, subject: str = "") -> None:
        self.to = str(to)
        self.subject = str(subject)

    async def handle(self) -> None:
        RUNS.append((self.type_name, self.to))

    def serialize(self) -> dict[str, Any]:
        return {"to": self.to, "subject": self.subject}


ALL_JOBS = (RecordingJob, FailingJob, FlakyJob, SlowJob, BlockingJob, EmailJob)


def make_registry() -> JobRegistry:
    registry = JobRegistry()
    for cls in ALL_JOBS:
        registry.register_class(cls)
    return registry


def register_jobs(registry: JobRegistry) -> None:
    """Entry point used by `jobqueue work --jobs tests._helpers.jobs`."""
    for cls in ALL_JOBS:
        if not registry.is_registered(cls.type_name):
            registry.register_class(cls)
