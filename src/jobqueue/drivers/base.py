from __future__ import annotations

import inspect
import itertools
import secrets
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from jobqueue.config import Settings, get_settings
from jobqueue.dlq.handler import FailedJobHandler
from jobqueue.errors import JobTimeoutError, MiddlewareError
from jobqueue.jobs.base import Job
from jobqueue.jobs.context import JobContext, JobStatus, now_utc
from jobqueue.jobs.envelope import to_envelope
from jobqueue.jobs.outcome import (
    BackoffPolicy,
    Completed,
    DeadLetter,
    Decision,
    Failed,
    Outcome,
    Retry,
    TimedOut,
    decide,
)
from jobqueue.jobs.registry import JobRegistry
from jobqueue.middleware.pipeline import MiddlewareContext, MiddlewarePipeline
from jobqueue.ops.metrics import QueueMetrics
from jobqueue.utils.aio import race_timeout
from jobqueue.utils.log import job_id_var, logger


@dataclass(frozen=True, slots=True)
class DriverConfig:
    name: str
    track_metrics: bool = True
    use_dlq: bool = True
    use_middleware: bool = True
    default_job_timeout_s: float | None = None
    max_retries: int = 3
    retry_delay_s: float = 30.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    driver_specific_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls, *, name: str | None = None, settings: Settings | None = None, **driver_specific: Any
    ) -> DriverConfig:
        s = settings or get_settings()
        return cls(
            name=str(name or s.queue_driver),
            track_metrics=bool(s.queue_track_metrics),
            use_dlq=bool(s.queue_use_dlq),
            use_middleware=bool(s.queue_use_middleware),
            default_job_timeout_s=(
                float(s.queue_default_job_timeout_s) if s.queue_default_job_timeout_s else None
            ),
            max_retries=int(s.queue_max_retries),
            retry_delay_s=float(s.queue_retry_delay_s),
            backoff=BackoffPolicy(
                kind=str(s.queue_backoff).lower(), cap_s=float(s.queue_backoff_cap_s)
            ),
            driver_specific_config=dict(driver_specific),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "track_metrics": self.track_metrics,
            "use_dlq": self.use_dlq,
            "use_middleware": self.use_middleware,
            "default_job_timeout_s": self.default_job_timeout_s,
            "max_retries": self.max_retries,
            "retry_delay_s": self.retry_delay_s,
            "backoff": self.backoff.kind,
        }


@dataclass(slots=True)
class JobListener:
    """Optional per-job callbacks (sync or async) a worker hooks into a driver."""

    on_start: Callable[[Job], Any] | None = None
    on_complete: Callable[[Job, Any], Any] | None = None
    on_error: Callable[[Job, Any, str | None], Any] | None = None


def _error_text(ex: BaseException) -> str:
    return str(ex) or type(ex).__name__


class BaseQueueDriver(ABC):
    """
    Shared job lifecycle for every storage backend.

    Backends implement how jobs are stored and popped (`push`, `process`,
    `clear`) and how a retry is represented (`retry_job`); this class owns:
      - context creation / id assignment
      - execution (middleware or direct, with cooperative timeout)
      - outcome classification, retry vs dead-letter decision
      - metrics, DLQ recording, lifecycle hooks
    """

    def __init__(
        self,
        config: DriverConfig,
        *,
        metrics: QueueMetrics | None = None,
        dlq_handler: FailedJobHandler | None = None,
        middleware: MiddlewarePipeline | None = None,
        registry: JobRegistry | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self.dlq_handler = dlq_handler
        self.middleware = middleware
        self.registry = registry or JobRegistry()
        self._ids = itertools.count()
        self._id_suffix = secrets.token_hex(3)
        self._listeners: list[JobListener] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def _m(self) -> QueueMetrics | None:
        return self.metrics if self.config.track_metrics else None

    # --- ids / contexts ---
    def generate_job_id(self) -> str:
        # Suffix keeps ids unique across processes sharing one backend.
        return f"{self.config.name}_{int(time.time() * 1000)}_{next(self._ids)}_{self._id_suffix}"

    def create_job_context(self, job: Job, delay_s: float | None = None) -> JobContext:
        now = now_utc()
        scheduled = now + timedelta(seconds=float(delay_s)) if delay_s is not None else None
        return JobContext(id=self.generate_job_id(), job=job, queued_at=now, scheduled_for=scheduled)

    # --- listeners ---
    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, event: str, *args: Any) -> None:
        for lst in list(self._listeners):
            cb = getattr(lst, event, None)
            if cb is None:
                continue
            try:
                res = cb(*args)
                if inspect.isawaitable(res):
                    await res
            except Exception as ex:
                logger.warning("job_listener_error", listener_event=event, error=_error_text(ex))

    # --- execution ---
    def _timeout_for(self, job: Job) -> float | None:
        return job.timeout_s if job.timeout_s is not None else self.config.default_job_timeout_s

    async def _attempt(self, ctx: JobContext) -> Outcome:
        timeout_s = self._timeout_for(ctx.job)
        t0 = time.perf_counter()
        if self.middleware is not None and self.config.use_middleware:
            mctx = MiddlewareContext(job=ctx.job, metadata=ctx.metadata)
            await self.middleware.execute(mctx, timeout_s=timeout_s)
            if not mctx.has_error:
                return Completed(elapsed_s=time.perf_counter() - t0, result=mctx.result)
            err = mctx.error
            if isinstance(err, JobTimeoutError):
                return TimedOut(error=_error_text(err), stack_trace=mctx.stack_trace)
            if isinstance(err, BaseException):
                return Failed(error=_error_text(err), stack_trace=mctx.stack_trace)
            return Failed(error=_error_text(MiddlewareError(str(err))), stack_trace=mctx.stack_trace)

        try:
            result = await race_timeout(ctx.job.run(), timeout_s, name=f"jobqueue.job.{ctx.id}")
        except JobTimeoutError as ex:
            return TimedOut(error=_error_text(ex), stack_trace=traceback.format_exc())
        except Exception as ex:
            return Failed(error=_error_text(ex), stack_trace=traceback.format_exc())
        return Completed(elapsed_s=time.perf_counter() - t0, result=result)

    async def execute_job(self, ctx: JobContext) -> Outcome:
        """
        Run one attempt of `ctx` and settle it.

        Never raises for job failures; the returned outcome says what happened
        and the context's status says where the job went (completed, pending
        again for a retry, or dead-lettered).
        """
        token = job_id_var.set(ctx.id)
        try:
            ctx.begin_attempt()
            m = self._m
            if m is not None:
                m.job_started()
            await self._notify("on_start", ctx.job)

            outcome = await self._attempt(ctx)
            job_type = ctx.job_type

            if isinstance(outcome, Completed):
                ctx.transition(JobStatus.COMPLETED)
                if m is not None:
                    m.job_completed(job_type, outcome.elapsed_s)
                logger.info(
                    "job_completed",
                    job_type=job_type,
                    attempts=ctx.attempts,
                    elapsed_ms=int(outcome.elapsed_s * 1000),
                )
                await self._hook(self.on_job_completed, ctx)
                await self._notify("on_complete", ctx.job, outcome.result)
                return outcome

            ctx.record_error(outcome.error, outcome.stack_trace)
            if isinstance(outcome, TimedOut):
                ctx.transition(JobStatus.TIMED_OUT)
                if m is not None:
                    m.job_timed_out(job_type)
            else:
                ctx.transition(JobStatus.FAILED)
                if m is not None:
                    m.job_failed(job_type)
            logger.warning(
                "job_attempt_failed",
                job_type=job_type,
                attempts=ctx.attempts,
                status=ctx.status.value,
                error=ctx.error,
            )
            await self._notify("on_error", ctx.job, ctx.error, ctx.stack_trace)
            await self.handle_job_failure(ctx, outcome)
            return outcome
        finally:
            job_id_var.reset(token)

    def max_retries_for(self, job: Job) -> int:
        return int(job.max_retries if job.max_retries is not None else self.config.max_retries)

    def envelope(self, ctx: JobContext) -> dict[str, Any]:
        """Stored record for `ctx`, carrying the resolved retry limit."""
        return to_envelope(ctx, max_retries=self.max_retries_for(ctx.job))

    def decide(self, ctx: JobContext, outcome: Outcome) -> Decision:
        job = ctx.job
        return decide(
            outcome,
            attempts=ctx.attempts,
            max_retries=self.max_retries_for(job),
            should_retry=bool(job.should_retry),
            retry_delay_s=(
                job.retry_delay_s if job.retry_delay_s is not None else self.config.retry_delay_s
            ),
            backoff=self.config.backoff,
        )

    async def handle_job_failure(self, ctx: JobContext, outcome: Outcome | None = None) -> Decision:
        if outcome is None:
            err = str(ctx.error or "unknown error")
            outcome = TimedOut(err, ctx.stack_trace) if ctx.status == JobStatus.TIMED_OUT else Failed(err, ctx.stack_trace)
        decision = self.decide(ctx, outcome)
        job_type = ctx.job_type

        if isinstance(decision, Retry):
            ctx.transition(JobStatus.RETRYING)
            try:
                await self.retry_job(ctx, decision.delay_s)
            except Exception as ex:
                # not stored again: dead-letter rather than drop it
                logger.error(
                    "job_retry_failed", job_type=job_type, attempts=ctx.attempts, error=_error_text(ex)
                )
                return await self._dead_letter(ctx, f"retry failed: {_error_text(ex)}")
            m = self._m
            if m is not None:
                m.job_retried(job_type)
            logger.info(
                "job_retry_scheduled",
                job_type=job_type,
                attempts=ctx.attempts,
                delay_s=decision.delay_s,
            )
            await self._hook(self.on_job_retried, ctx)
            return decision

        reason = decision.reason if isinstance(decision, DeadLetter) else "dead-lettered"
        return await self._dead_letter(ctx, reason)

    async def _dead_letter(self, ctx: JobContext, reason: str) -> DeadLetter:
        job_type = ctx.job_type
        ctx.transition(JobStatus.DEAD_LETTERED)
        if self.config.use_dlq and self.dlq_handler is not None:
            try:
                await self.dlq_handler.record_failure(
                    id=ctx.id,
                    job_type=job_type,
                    payload=ctx.job.serialize(),
                    error=ctx.error,
                    stack_trace=ctx.stack_trace,
                    attempts=ctx.attempts,
                    metadata=ctx.metadata,
                )
            except Exception as ex:
                logger.error("dlq_record_failed", job_type=job_type, error=_error_text(ex))
        logger.warning(
            "job_dead_lettered", job_type=job_type, attempts=ctx.attempts, reason=reason, error=ctx.error
        )
        await self._hook(self.on_job_failed, ctx)
        return DeadLetter(reason=reason)

    async def _hook(self, hook: Callable[[JobContext], Any], ctx: JobContext) -> None:
        try:
            await hook(ctx)
        except Exception as ex:
            logger.error("driver_hook_error", hook=hook.__name__, job_type=ctx.job_type, error=_error_text(ex))

    # --- lifecycle hooks ---
    async def on_job_completed(self, ctx: JobContext) -> None:
        return None

    async def on_job_failed(self, ctx: JobContext) -> None:
        return None

    async def on_job_retried(self, ctx: JobContext) -> None:
        return None

    # --- backend contract ---
    @abstractmethod
    async def push(self, job: Job, *, delay_s: float | None = None) -> str:
        """Enqueue `job`; returns its id."""

    @abstractmethod
    async def process(self) -> bool:
        """Run at most one ready job; True if one ran."""

    @abstractmethod
    async def retry_job(self, ctx: JobContext, delay_s: float) -> None:
        """
        Make `ctx` (status retrying) runnable again after `delay_s`.

        If this raises, `ctx` must still be retrying; the job is then dead-lettered.
        """

    @abstractmethod
    async def clear(self) -> None: ...

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {"driver": self.config.name, "config": self.config.to_dict()}
        if self.metrics is not None:
            stats["metrics"] = self.metrics.to_dict()
        if self.dlq_handler is not None:
            stats["dlq"] = await self.dlq_handler.store.get_stats()
        return stats

    async def is_healthy(self) -> bool:
        return True

    async def close(self) -> None:
        return None
