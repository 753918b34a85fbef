from __future__ import annotations

import json
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobqueue.drivers.base import BaseQueueDriver, DriverConfig
from jobqueue.errors import ConnectivityError, JobDeserializationError
from jobqueue.jobs.base import Job
from jobqueue.jobs.context import JobContext, now_utc
from jobqueue.jobs.envelope import from_envelope
from jobqueue.utils.log import logger


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisStorageDriver(BaseQueueDriver):
    """
    Redis-backed queue.

    Keys (optionally prefixed with `<prefix>:`):
      - queue:<Q>             list, ready envelopes (LPUSH in, RPOP/BRPOP out)
      - queue:<Q>:delayed     zset, envelope -> ready-at epoch millis
      - queue:<Q>:processing  hash, job id -> envelope while executing
      - queue:<Q>:failed      list, dead-lettered envelopes (+ error fields)

    Delivery is at-least-once: a worker that dies mid-job leaves its entry
    in the processing hash.
    """

    def __init__(self, config: DriverConfig, *, client: Any = None, **kwargs: Any) -> None:
        super().__init__(config, **kwargs)
        dsc = dict(config.driver_specific_config or {})
        self.queue = str(dsc.get("queue") or "default")
        self.prefix = str(dsc.get("prefix") or "").strip().strip(":")
        self.url = str(dsc.get("url") or "").strip() or None
        self.host = str(dsc.get("host") or "localhost")
        self.port = int(dsc.get("port") or 6379)
        self.db = int(dsc.get("db") or 0)
        self._password = dsc.get("password") or None
        self.block_timeout_s = float(dsc.get("block_timeout_s", 1.0) or 0.0)
        self.promote_batch = max(1, int(dsc.get("promote_batch") or 10))
        self._client = client
        self._owns_client = client is None

    def _redis(self):
        if self._client is not None:
            return self._client
        import redis.asyncio as redis

        if self.url:
            self._client = redis.Redis.from_url(self.url, decode_responses=True)
        else:
            self._client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self._password,
                decode_responses=True,
            )
        return self._client

    # --- keys ---
    def _base_key(self) -> str:
        base = f"queue:{self.queue}"
        return f"{self.prefix}:{base}" if self.prefix else base

    def _main_key(self) -> str:
        return self._base_key()

    def _delayed_key(self) -> str:
        return f"{self._base_key()}:delayed"

    def _processing_key(self) -> str:
        return f"{self._base_key()}:processing"

    def _failed_key(self) -> str:
        return f"{self._base_key()}:failed"

    # --- push ---
    async def _enqueue(self, ctx: JobContext, *, ready_at_ms: int | None) -> None:
        r = self._redis()
        raw = json.dumps(self.envelope(ctx), default=str)
        if ready_at_ms is not None and ready_at_ms > _now_ms():
            await r.zadd(self._delayed_key(), {raw: float(ready_at_ms)})
        else:
            await r.lpush(self._main_key(), raw)

    async def push(self, job: Job, *, delay_s: float | None = None) -> str:
        ctx = self.create_job_context(job, delay_s)
        ready_at = _now_ms() + int(float(delay_s) * 1000) if delay_s else None
        try:
            await self._enqueue(ctx, ready_at_ms=ready_at)
            m = self._m
            if m is not None:
                m.job_queued(ctx.job_type)
                m.record_queue_depth(int(await self._redis().llen(self._main_key()) or 0))
        except (RedisConnectionError, RedisTimeoutError, OSError) as ex:
            raise ConnectivityError(f"redis unavailable: {type(ex).__name__}") from ex
        logger.info(
            "queue_push", queue_mode="redis", job_id=ctx.id, job_type=ctx.job_type, delayed=ready_at is not None
        )
        return ctx.id

    # --- process ---
    async def _promote_due(self) -> int:
        """
        Move due delayed entries onto the main list.

        ZREM first: only the worker whose ZREM removed the member pushes it.
        """
        r = self._redis()
        due = await r.zrangebyscore(
            self._delayed_key(), min="-inf", max=_now_ms(), start=0, num=self.promote_batch
        )
        moved = 0
        for member in due or []:
            if int(await r.zrem(self._delayed_key(), member) or 0) == 1:
                await r.lpush(self._main_key(), member)
                moved += 1
        return moved

    async def _pop(self) -> str | None:
        r = self._redis()
        if self.block_timeout_s > 0:
            res = await r.brpop([self._main_key()], timeout=self.block_timeout_s)
            return None if res is None else str(res[1])
        raw = await r.rpop(self._main_key())
        return None if raw is None else str(raw)

    async def _reject(self, raw: str, error: str) -> None:
        logger.warning("queue_record_invalid", queue_mode="redis", error=error)
        await self._redis().lpush(
            self._failed_key(),
            json.dumps(
                {"raw": raw, "error": error, "failedAt": datetime.now(tz=timezone.utc).isoformat()}
            ),
        )

    async def process(self) -> bool:
        try:
            await self._promote_due()
            raw = await self._pop()
        except Exception as ex:
            logger.warning("queue_process_error", queue_mode="redis", error=f"{type(ex).__name__}: {ex}")
            return False
        if raw is None:
            return False

        r = self._redis()
        try:
            try:
                ctx = from_envelope(json.loads(raw), self.registry)
            except (ValueError, JobDeserializationError) as ex:
                await self._reject(raw, str(ex))
                return False
            if not ctx.is_ready():
                # clock skew between workers: not due yet here
                await r.zadd(self._delayed_key(), {raw: float(ctx.scheduled_for.timestamp() * 1000)})
                return False

            await r.hset(self._processing_key(), ctx.id, raw)
            try:
                await self.execute_job(ctx)
            finally:
                await r.hdel(self._processing_key(), ctx.id)
        except Exception as ex:
            logger.warning("queue_process_error", queue_mode="redis", error=f"{type(ex).__name__}: {ex}")
            return False
        return True

    async def retry_job(self, ctx: JobContext, delay_s: float) -> None:
        # Enqueue a rescheduled copy first so a failed write leaves `ctx` retrying.
        now = now_utc()
        staged = replace(ctx, metadata=dict(ctx.metadata))
        staged.reschedule(delay_s, now=now)
        await self._enqueue(staged, ready_at_ms=int(staged.scheduled_for.timestamp() * 1000))
        ctx.reschedule(delay_s, now=now)

    async def on_job_failed(self, ctx: JobContext) -> None:
        rec = self.envelope(ctx)
        rec.update(
            {
                "error": ctx.error,
                "stackTrace": ctx.stack_trace,
                "failedAt": datetime.now(tz=timezone.utc).isoformat(),
            }
        )
        await self._redis().lpush(self._failed_key(), json.dumps(rec, default=str))

    async def clear(self) -> None:
        await self._redis().delete(
            self._main_key(), self._delayed_key(), self._processing_key(), self._failed_key()
        )
        m = self._m
        if m is not None:
            m.record_queue_depth(0)

    async def failed_jobs(self, *, limit: int = 100) -> list[dict[str, Any]]:
        items = await self._redis().lrange(self._failed_key(), 0, max(0, int(limit) - 1))
        out: list[dict[str, Any]] = []
        for it in items or []:
            try:
                out.append(json.loads(it))
            except ValueError:
                out.append({"raw": str(it)})
        return out

    async def is_healthy(self) -> bool:
        try:
            return bool(await self._redis().ping())
        except Exception as ex:
            logger.warning("queue_health_failed", queue_mode="redis", error=type(ex).__name__)
            return False

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_stats(self) -> dict[str, Any]:
        stats = await super().get_stats()
        stats["connection"] = {
            "url_configured": bool(self.url),
            "host": None if self.url else self.host,
            "port": None if self.url else self.port,
            "db": self.db,
            "prefix": self.prefix,
        }
        try:
            r = self._redis()
            main = int(await r.llen(self._main_key()) or 0)
            delayed = int(await r.zcard(self._delayed_key()) or 0)
            processing = int(await r.hlen(self._processing_key()) or 0)
            failed = int(await r.llen(self._failed_key()) or 0)
            stats["queue"] = {
                "name": self.queue,
                "main_jobs": main,
                "delayed_jobs": delayed,
                "processing_jobs": processing,
                "failed_jobs": failed,
                "total_jobs": main + delayed + processing,
            }
        except Exception as ex:
            stats["queue"] = {"name": self.queue, "error": type(ex).__name__}
        return stats
