from __future__ import annotations

import asyncio
from pathlib import Path

from pydantic import BaseModel

from jobqueue.dlq.handler import FailedJobHandler
from jobqueue.dlq.store import FileDeadLetterStore, InMemoryDeadLetterStore
from jobqueue.drivers.base import DriverConfig, JobListener
from jobqueue.drivers.memory import InMemoryDriver
from jobqueue.jobs.context import JobStatus
from jobqueue.jobs.outcome import BackoffPolicy, Completed, Failed, TimedOut
from jobqueue.middleware.builtin import LoggingMiddleware, PayloadValidationMiddleware
from jobqueue.middleware.pipeline import MiddlewarePipeline
from jobqueue.ops.metrics import QueueMetrics
from tests._helpers.jobs import RUNS, FailingJob, FlakyJob, RecordingJob, SlowJob, make_registry


def _driver(*, middleware: bool = False, **config) -> InMemoryDriver:
    config.setdefault("retry_delay_s", 0.0)
    return InMemoryDriver(
        DriverConfig(name="memory", **config),
        metrics=QueueMetrics(driver="memory"),
        dlq_handler=FailedJobHandler(InMemoryDeadLetterStore()),
        middleware=MiddlewarePipeline([LoggingMiddleware()]) if middleware else None,
        registry=make_registry(),
    )


async def _drain(driver: InMemoryDriver, limit: int = 20) -> int:
    n = 0
    while n < limit and await driver.process():
        n += 1
    return n


def test_zero_retries_dead_letters_on_first_failure() -> None:
    async def main() -> None:
        driver = _driver()
        job_id = await driver.push(FailingJob("a", max_retries=0))
        assert await driver.process() is True
        assert await driver.process() is False

        failed = await driver.dlq_handler.store.get_all()
        assert [(f.id, f.attempts, f.error) for f in failed] == [(job_id, 1, "boom:a")]
        assert driver.is_empty
        assert driver.metrics.total_failed == 1
        assert driver.metrics.total_retried == 0

    asyncio.run(main())
    assert RUNS == [("failing", "a")]


def test_retries_exhaust_then_dead_letter() -> None:
    async def main() -> None:
        driver = _driver()
        await driver.push(FailingJob("b", max_retries=3))
        assert await _drain(driver) == 3

        (record,) = await driver.dlq_handler.store.get_all()
        assert record.attempts == 3
        assert record.job_type == "failing"
        assert record.stack_trace and "RuntimeError" in record.stack_trace
        assert driver.metrics.total_failed == 3
        assert driver.metrics.total_retried == 2

    asyncio.run(main())
    assert RUNS == [("failing", "b")] * 3


def test_flaky_job_completes_after_retry() -> None:
    async def main() -> None:
        driver = _driver()
        await driver.push(FlakyJob("f", failures=2))
        assert await _drain(driver) == 3
        assert await driver.dlq_handler.store.count() == 0
        assert driver.metrics.total_completed == 1
        assert driver.metrics.total_retried == 2

    asyncio.run(main())


def test_retry_waits_for_delay() -> None:
    async def main() -> None:
        driver = _driver()
        await driver.push(FailingJob("d", max_retries=2, retry_delay_s=0.1))
        assert await driver.process() is True
        (ctx,) = driver.pending_jobs
        assert ctx.status == JobStatus.PENDING
        assert ctx.metadata["retry_count"] == 1
        assert await driver.process() is False
        await asyncio.sleep(0.15)
        assert await driver.process() is True
        assert driver.is_empty

    asyncio.run(main())


def test_exponential_backoff_from_config() -> None:
    async def main() -> None:
        driver = _driver(backoff=BackoffPolicy(kind="exponential", cap_s=100.0))
        job = FailingJob("e", max_retries=3, retry_delay_s=10.0)
        await driver.push(job)
        await driver.process()
        (ctx,) = driver.pending_jobs
        first = ctx.scheduled_for - ctx.queued_at
        assert 9.0 < first.total_seconds() < 11.0
        assert driver.decide(ctx, Failed("x")).delay_s == 10.0
        ctx.attempts = 2
        assert driver.decide(ctx, Failed("x")).delay_s == 20.0

    asyncio.run(main())


def test_job_policy_defers_to_driver_config() -> None:
    async def main() -> None:
        driver = _driver(max_retries=2)
        await driver.push(FailingJob("c", max_retries=None, retry_delay_s=None))
        assert await _drain(driver) == 2
        (record,) = await driver.dlq_handler.store.get_all()
        assert record.attempts == 2

    asyncio.run(main())


def test_timeout_direct_path() -> None:
    async def main() -> None:
        driver = _driver()
        job = SlowJob(0.5, timeout_s=0.05)
        await driver.push(job)
        ctx = driver.pending_jobs[0]
        outcome = await driver.execute_job(ctx)
        assert isinstance(outcome, TimedOut)
        assert ctx.status == JobStatus.DEAD_LETTERED
        assert job.finished is False
        assert driver.metrics.total_timed_out == 1
        (record,) = await driver.dlq_handler.store.get_all()
        assert "timed out" in record.error

    asyncio.run(main())


def test_timeout_middleware_path() -> None:
    async def main() -> None:
        driver = _driver(middleware=True)
        await driver.push(SlowJob(0.5, timeout_s=0.05))
        assert await driver.process() is True
        assert driver.metrics.total_timed_out == 1
        assert await driver.dlq_handler.store.count() == 1

    asyncio.run(main())


def test_default_timeout_from_config() -> None:
    async def main() -> None:
        driver = _driver(default_job_timeout_s=0.05)
        await driver.push(SlowJob(0.5))
        await driver.process()
        assert driver.metrics.total_timed_out == 1

    asyncio.run(main())


def test_completion_result_and_metrics() -> None:
    async def main() -> None:
        driver = _driver(middleware=True)
        await driver.push(RecordingJob("r"))
        ctx = driver.pending_jobs[0]
        outcome = await driver.execute_job(ctx)
        assert isinstance(outcome, Completed)
        assert outcome.result == "r"
        assert ctx.status == JobStatus.COMPLETED
        assert driver.metrics.total_completed == 1
        assert driver.metrics.currently_processing == 0

    asyncio.run(main())


def test_listeners_see_every_event() -> None:
    seen: list[tuple] = []

    async def on_complete(job, result) -> None:
        seen.append(("complete", job.job_type, result))

    def broken(job) -> None:
        raise RuntimeError("listener bug")

    async def main() -> None:
        driver = _driver()
        driver.add_listener(
            JobListener(
                on_start=lambda job: seen.append(("start", job.job_type)),
                on_complete=on_complete,
                on_error=lambda job, err, stack: seen.append(("error", job.job_type, err)),
            )
        )
        driver.add_listener(JobListener(on_start=broken))
        await driver.push(RecordingJob("ok"))
        await driver.push(FailingJob("bad"))
        await _drain(driver)

    asyncio.run(main())
    assert seen == [
        ("start", "recording"),
        ("complete", "recording", "ok"),
        ("start", "failing"),
        ("error", "failing", "boom:bad"),
    ]


class _HookedDriver(InMemoryDriver):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.hooks: list[str] = []

    async def on_job_completed(self, ctx) -> None:
        self.hooks.append(f"completed:{ctx.job_type}")

    async def on_job_retried(self, ctx) -> None:
        self.hooks.append(f"retried:{ctx.job_type}")

    async def on_job_failed(self, ctx) -> None:
        self.hooks.append(f"failed:{ctx.job_type}")
        raise RuntimeError("hook errors are logged, not raised")


def test_driver_hooks() -> None:
    async def main() -> list[str]:
        driver = _HookedDriver(DriverConfig(name="memory", retry_delay_s=0.0), registry=make_registry())
        await driver.push(RecordingJob("r"))
        await driver.push(FailingJob("x", max_retries=2))
        await _drain(driver)
        return driver.hooks

    assert asyncio.run(main()) == ["completed:recording", "retried:failing", "failed:failing"]


def test_metrics_and_dlq_can_be_disabled() -> None:
    async def main() -> None:
        driver = _driver(track_metrics=False, use_dlq=False)
        await driver.push(FailingJob("z"))
        await driver.process()
        assert driver.metrics.total_failed == 0
        assert await driver.dlq_handler.store.count() == 0

    asyncio.run(main())


class _KeyPayload(BaseModel):
    key: str


def test_validated_payload_reaches_file_dead_letters(tmp_path: Path) -> None:
    async def main() -> None:
        store = FileDeadLetterStore(tmp_path / "failed_jobs.json")
        driver = InMemoryDriver(
            DriverConfig(name="memory", retry_delay_s=0.0),
            dlq_handler=FailedJobHandler(store),
            middleware=MiddlewarePipeline([PayloadValidationMiddleware({"failing": _KeyPayload})]),
            registry=make_registry(),
        )
        await driver.push(FailingJob("v", max_retries=0))
        assert await driver.process() is True

        assert await store.count() == 1
        (record,) = await FileDeadLetterStore(tmp_path / "failed_jobs.json").get_all()
        assert record.error == "boom:v"
        assert record.metadata["validated_payload"] == {"key": "v"}

    asyncio.run(main())


class _UnstorableRetryDriver(InMemoryDriver):
    async def retry_job(self, ctx, delay_s: float) -> None:
        raise OSError("disk full")


def test_retry_that_cannot_be_stored_dead_letters() -> None:
    async def main() -> None:
        driver = _UnstorableRetryDriver(
            DriverConfig(name="memory", retry_delay_s=0.0),
            metrics=QueueMetrics(driver="memory"),
            dlq_handler=FailedJobHandler(InMemoryDeadLetterStore()),
            registry=make_registry(),
        )
        await driver.push(FailingJob("lost", max_retries=3))
        ctx = driver.pending_jobs[0]
        outcome = await driver.execute_job(ctx)

        assert isinstance(outcome, Failed)
        assert ctx.status == JobStatus.DEAD_LETTERED
        (record,) = await driver.dlq_handler.store.get_all()
        assert record.attempts == 1
        assert record.error == "boom:lost"
        assert driver.metrics.total_retried == 0
        assert await driver.process() is False

    asyncio.run(main())
