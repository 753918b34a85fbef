from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from jobqueue.errors import MiddlewareError
from jobqueue.jobs.base import Job
from jobqueue.utils.aio import race_timeout

Next = Callable[[], Awaitable[None]]


@dataclass(slots=True)
class MiddlewareContext:
    """
    State shared by every middleware around one job execution.

    `error` holds the exception (or message) that failed the run; once set,
    the driver treats the attempt as failed.
    """

    job: Job
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Any = None
    stack_trace: str | None = None
    result: Any = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def elapsed_s(self) -> float:
        return max(0.0, time.monotonic() - self.started_at)

    def fail(self, error: Any, stack_trace: str | None = None) -> None:
        if isinstance(error, str):
            error = MiddlewareError(error)
        self.error = error
        if stack_trace is None and isinstance(error, BaseException) and error.__traceback__ is not None:
            stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self.stack_trace = stack_trace


class QueueMiddleware(Protocol):
    name: str

    async def handle(self, ctx: MiddlewareContext, next: Next) -> None: ...


class MiddlewarePipeline:
    """
    Ordered middleware chain around `job.run()`.

    - runs first-to-last; the job runs after the last middleware calls `next`
    - a middleware short-circuits by calling `ctx.fail(...)` and not `next`
    - nothing raised by the job or a middleware escapes `execute()`; it lands
      in `ctx.error`
    """

    def __init__(self, middleware: list[QueueMiddleware] | None = None) -> None:
        self._middleware: list[QueueMiddleware] = list(middleware or [])

    def add(self, middleware: QueueMiddleware) -> MiddlewarePipeline:
        self._middleware.append(middleware)
        return self

    def add_at(self, index: int, middleware: QueueMiddleware) -> MiddlewarePipeline:
        self._middleware.insert(int(index), middleware)
        return self

    def remove(self, middleware: QueueMiddleware) -> bool:
        try:
            self._middleware.remove(middleware)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._middleware.clear()

    @property
    def count(self) -> int:
        return len(self._middleware)

    @property
    def middleware(self) -> tuple[QueueMiddleware, ...]:
        return tuple(self._middleware)

    async def execute(self, ctx: MiddlewareContext, *, timeout_s: float | None = None) -> MiddlewareContext:
        chain = list(self._middleware)
        index = 0

        async def _run_job() -> None:
            try:
                ctx.result = await race_timeout(
                    ctx.job.run(), timeout_s, name=f"jobqueue.job.{ctx.job.job_type}"
                )
            except Exception as ex:
                ctx.fail(ex, traceback.format_exc())

        async def _next() -> None:
            nonlocal index
            if index >= len(chain):
                await _run_job()
                return
            mw = chain[index]
            index += 1
            await mw.handle(ctx, _next)

        try:
            await _next()
        except Exception as ex:
            if not ctx.has_error:
                ctx.fail(ex, traceback.format_exc())
        return ctx
