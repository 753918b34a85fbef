from __future__ import annotations

import asyncio
import time

import pytest

from jobqueue.drivers.base import DriverConfig
from jobqueue.drivers.sync_driver import SynchronousDriver
from jobqueue.jobs.base import CallableJob
from tests._helpers.jobs import RUNS, FailingJob, RecordingJob


def _driver() -> SynchronousDriver:
    return SynchronousDriver(DriverConfig(name="sync"))


def test_push_runs_inline() -> None:
    async def main() -> SynchronousDriver:
        driver = _driver()
        job = RecordingJob("now")
        job_id = await driver.push(job)
        assert job.executed is True
        assert job_id.startswith("sync_")
        assert await driver.process() is False
        return driver

    driver = asyncio.run(main())
    assert RUNS == [("recording", "now")]
    assert driver.executed == 1


def test_errors_reach_the_caller() -> None:
    async def main() -> None:
        with pytest.raises(RuntimeError, match="boom:s"):
            await _driver().push(FailingJob("s", max_retries=5))

    asyncio.run(main())
    assert RUNS == [("failing", "s")]


def test_delay_is_slept() -> None:
    async def main() -> float:
        t0 = time.monotonic()
        await _driver().push(RecordingJob("late"), delay_s=0.05)
        return time.monotonic() - t0

    assert asyncio.run(main()) >= 0.05


def test_stats() -> None:
    async def main() -> dict:
        driver = _driver()
        await driver.push(RecordingJob("a"))
        await driver.clear()
        return await driver.get_stats()

    stats = asyncio.run(main())
    assert stats["execution_mode"] == "synchronous"
    assert stats["queue_depth"] == 0
    assert stats["executed"] == 1


def test_callable_job() -> None:
    calls: list[tuple] = []

    async def send(to: str, *, subject: str) -> None:
        calls.append((to, subject))

    def blocking(n: int) -> int:
        calls.append(("blocking", n))
        return n * 2

    async def main() -> None:
        driver = _driver()
        await driver.push(CallableJob(send, "a@example.com", subject="hi"))
        job = CallableJob(blocking, 21, name="double")
        assert job.display_name == "callable:double"
        assert job.serialize() == {"name": "double"}
        assert await job.run() == 42

    asyncio.run(main())
    assert calls == [("a@example.com", "hi"), ("blocking", 21)]
