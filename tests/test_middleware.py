from __future__ import annotations

import asyncio

from pydantic import BaseModel

from jobqueue.errors import JobTimeoutError, MiddlewareError
from jobqueue.middleware.builtin import (
    LoggingMiddleware,
    PayloadValidationMiddleware,
    RateLimitMiddleware,
)
from jobqueue.middleware.pipeline import MiddlewareContext, MiddlewarePipeline
from tests._helpers.jobs import RUNS, EmailJob, FailingJob, RecordingJob, SlowJob


class _Tag:
    def __init__(self, name: str, order: list[str]) -> None:
        self.name = name
        self._order = order

    async def handle(self, ctx: MiddlewareContext, next) -> None:
        self._order.append(f"{self.name}:before")
        await next()
        self._order.append(f"{self.name}:after")


class _Exploding:
    name = "exploding"

    async def handle(self, ctx: MiddlewareContext, next) -> None:
        raise RuntimeError("middleware blew up")


def test_pipeline_runs_in_order_around_job() -> None:
    order: list[str] = []
    pipe = MiddlewarePipeline([_Tag("a", order)]).add(_Tag("b", order))
    ctx = MiddlewareContext(job=RecordingJob("k"))

    asyncio.run(pipe.execute(ctx))

    assert order == ["a:before", "b:before", "b:after", "a:after"]
    assert ctx.result == "k"
    assert not ctx.has_error
    assert RUNS == [("recording", "k")]


def test_pipeline_management() -> None:
    order: list[str] = []
    first, second = _Tag("a", order), _Tag("b", order)
    pipe = MiddlewarePipeline().add(second).add_at(0, first)
    assert pipe.middleware == (first, second)
    assert pipe.count == 2
    assert pipe.remove(first) is True
    assert pipe.remove(first) is False
    pipe.clear()
    assert pipe.count == 0


def test_job_error_is_captured() -> None:
    ctx = MiddlewareContext(job=FailingJob("x"))
    asyncio.run(MiddlewarePipeline([LoggingMiddleware()]).execute(ctx))
    assert isinstance(ctx.error, RuntimeError)
    assert "boom:x" in str(ctx.error)
    assert ctx.stack_trace and "RuntimeError" in ctx.stack_trace


def test_middleware_error_is_captured() -> None:
    ctx = MiddlewareContext(job=RecordingJob("k"))
    asyncio.run(MiddlewarePipeline([_Exploding()]).execute(ctx))
    assert ctx.has_error
    assert RUNS == []


def test_timeout_applies_inside_pipeline() -> None:
    ctx = MiddlewareContext(job=SlowJob(1.0))
    asyncio.run(MiddlewarePipeline().execute(ctx, timeout_s=0.05))
    assert isinstance(ctx.error, JobTimeoutError)


def test_fail_with_message_wraps_it() -> None:
    ctx = MiddlewareContext(job=RecordingJob("k"))
    ctx.fail("nope")
    assert isinstance(ctx.error, MiddlewareError)


def test_rate_limit_short_circuits() -> None:
    limiter = RateLimitMiddleware(limit=1, per_seconds=3600)
    pipe = MiddlewarePipeline([limiter])

    async def main() -> tuple[MiddlewareContext, MiddlewareContext]:
        a = await pipe.execute(MiddlewareContext(job=RecordingJob("1")))
        b = await pipe.execute(MiddlewareContext(job=RecordingJob("2")))
        return a, b

    first, second = asyncio.run(main())
    assert not first.has_error
    assert isinstance(second.error, MiddlewareError)
    assert RUNS == [("recording", "1")]


def test_rate_limit_per_type_override() -> None:
    limiter = RateLimitMiddleware(limit=1, per_seconds=3600, limits={"send_email": (2, 3600)})
    assert limiter.allow("send_email")
    assert limiter.allow("send_email")
    assert not limiter.allow("send_email")
    assert limiter.allow("other")
    assert not limiter.allow("other")


class _EmailPayload(BaseModel):
    to: str
    subject: str


class _StrictPayload(BaseModel):
    to: int


def test_payload_validation() -> None:
    validator = PayloadValidationMiddleware({"send_email": _EmailPayload})

    ok = asyncio.run(MiddlewarePipeline([validator]).execute(MiddlewareContext(job=EmailJob("a@b.c", "hi"))))
    assert not ok.has_error
    assert ok.metadata["validated_payload"] == {"to": "a@b.c", "subject": "hi"}

    validator.register("send_email", _StrictPayload)
    bad = asyncio.run(MiddlewarePipeline([validator]).execute(MiddlewareContext(job=EmailJob("x"))))
    assert bad.has_error
    assert RUNS == [("send_email", "a@b.c")]
