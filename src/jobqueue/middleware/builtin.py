from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Mapping

from pydantic import BaseModel, ValidationError

from jobqueue.errors import MiddlewareError
from jobqueue.middleware.pipeline import MiddlewareContext, Next
from jobqueue.utils.log import logger


class LoggingMiddleware:
    name = "logging"

    async def handle(self, ctx: MiddlewareContext, next: Next) -> None:
        job_type = ctx.job.job_type
        logger.info("job_start", job_type=job_type, job=ctx.job.display_name)
        await next()
        if ctx.has_error:
            logger.warning(
                "job_error",
                job_type=job_type,
                elapsed_ms=int(ctx.elapsed_s * 1000),
                error=str(ctx.error),
            )
        else:
            logger.info("job_finish", job_type=job_type, elapsed_ms=int(ctx.elapsed_s * 1000))


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimitMiddleware:
    """
    Token bucket per job type.

    An empty bucket fails the attempt without running the job; the normal
    retry policy then reschedules it.
    """

    name = "rate_limit"

    def __init__(self, *, limit: int, per_seconds: float, limits: Mapping[str, tuple[int, float]] | None = None) -> None:
        if int(limit) <= 0 or float(per_seconds) <= 0:
            raise ValueError("rate limit needs limit > 0 and per_seconds > 0")
        self.limit = int(limit)
        self.per_seconds = float(per_seconds)
        self.limits = dict(limits or {})
        self._buckets: dict[str, _Bucket] = {}

    def allow(self, key: str) -> bool:
        limit, per = self.limits.get(key, (self.limit, self.per_seconds))
        now = time.monotonic()
        rate = float(limit) / float(per)
        b = self._buckets.get(key)
        if b is None:
            b = _Bucket(tokens=float(limit), updated_at=now)
            self._buckets[key] = b
        # refill
        b.tokens = min(float(limit), b.tokens + (now - b.updated_at) * rate)
        b.updated_at = now
        if b.tokens < 1.0:
            return False
        b.tokens -= 1.0
        return True

    async def handle(self, ctx: MiddlewareContext, next: Next) -> None:
        key = ctx.job.job_type
        if not self.allow(key):
            logger.info("job_rate_limited", job_type=key)
            ctx.fail(MiddlewareError(f"Rate limit exceeded for {key}"))
            return
        await next()


class PayloadValidationMiddleware:
    """
    Validates `job.serialize()` against a pydantic model registered per job type.

    Job types without a model pass through untouched.
    """

    name = "payload_validation"

    def __init__(self, schemas: Mapping[str, type[BaseModel]] | None = None) -> None:
        self._schemas: dict[str, type[BaseModel]] = dict(schemas or {})

    def register(self, job_type: str, model: type[BaseModel]) -> None:
        self._schemas[str(job_type)] = model

    async def handle(self, ctx: MiddlewareContext, next: Next) -> None:
        model = self._schemas.get(ctx.job.job_type)
        if model is not None:
            try:
                ctx.metadata["validated_payload"] = model.model_validate(
                    ctx.job.serialize()
                ).model_dump(mode="json")
            except ValidationError as ex:
                logger.warning(
                    "job_payload_invalid", job_type=ctx.job.job_type, errors=ex.error_count()
                )
                ctx.fail(ex)
                return
        await next()
