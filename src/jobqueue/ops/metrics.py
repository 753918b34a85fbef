from __future__ import annotations

import json
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Latency buckets (seconds) for background jobs: sub-second emails to long exports.
JOB_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0)

MAX_DURATION_SAMPLES = 10_000
MAX_DEPTH_SAMPLES = 1_000


@dataclass(slots=True)
class _TypeCounts:
    queued: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    timed_out: int = 0
    total_time_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        avg = (self.total_time_s / self.completed) if self.completed else 0.0
        return {
            "queued": self.queued,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "timed_out": self.timed_out,
            "average_processing_time_s": round(avg, 6),
        }


class QueueMetrics:
    """
    Per-driver queue health counters.

    Plain in-process counters back the derived rates; every event is mirrored
    into a per-instance prometheus `CollectorRegistry` so several drivers in
    one process don't collide on metric names.
    """

    def __init__(self, *, driver: str = "default") -> None:
        self.driver = str(driver or "default")
        self.registry = CollectorRegistry()
        labels = ("job_type",)
        self._p_queued = Counter(
            "jobqueue_jobs_queued_total", "Jobs pushed", labelnames=labels, registry=self.registry
        )
        self._p_completed = Counter(
            "jobqueue_jobs_completed_total", "Jobs completed", labelnames=labels, registry=self.registry
        )
        self._p_failed = Counter(
            "jobqueue_jobs_failed_total", "Job attempts failed", labelnames=labels, registry=self.registry
        )
        self._p_retried = Counter(
            "jobqueue_jobs_retried_total", "Jobs rescheduled for retry", labelnames=labels, registry=self.registry
        )
        self._p_timed_out = Counter(
            "jobqueue_jobs_timed_out_total", "Job attempts timed out", labelnames=labels, registry=self.registry
        )
        self._p_processing = Gauge(
            "jobqueue_jobs_processing", "Jobs currently executing", registry=self.registry
        )
        self._p_depth = Gauge("jobqueue_queue_depth", "Last observed queue depth", registry=self.registry)
        self._p_seconds = Histogram(
            "jobqueue_job_seconds",
            "Job processing time (seconds)",
            labelnames=labels,
            registry=self.registry,
            buckets=JOB_BUCKETS,
        )
        self._reset_counts()

    def _reset_counts(self) -> None:
        self.total_queued = 0
        self.total_started = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_retried = 0
        self.total_timed_out = 0
        self.currently_processing = 0
        self.peak_queue_depth = 0
        self.current_queue_depth = 0
        self._durations: deque[float] = deque(maxlen=MAX_DURATION_SAMPLES)
        self._depths: deque[int] = deque(maxlen=MAX_DEPTH_SAMPLES)
        self._by_type: dict[str, _TypeCounts] = {}
        self._started_at = time.monotonic()
        self._started_wall = datetime.now(tz=timezone.utc)
        self._last_activity: datetime | None = None

    def _type(self, job_type: str) -> _TypeCounts:
        key = str(job_type or "unknown")
        tc = self._by_type.get(key)
        if tc is None:
            tc = _TypeCounts()
            self._by_type[key] = tc
        return tc

    def _touch(self) -> None:
        self._last_activity = datetime.now(tz=timezone.utc)

    # --- events ---
    def job_queued(self, job_type: str) -> None:
        self.total_queued += 1
        self._type(job_type).queued += 1
        self._p_queued.labels(job_type=str(job_type)).inc()
        self._touch()

    def job_started(self) -> None:
        self.total_started += 1
        self.currently_processing += 1
        self._p_processing.set(self.currently_processing)
        self._touch()

    def _finished(self) -> None:
        self.currently_processing = max(0, self.currently_processing - 1)
        self._p_processing.set(self.currently_processing)

    def job_completed(self, job_type: str, duration_s: float) -> None:
        d = max(0.0, float(duration_s))
        self.total_completed += 1
        self._finished()
        self._durations.append(d)
        tc = self._type(job_type)
        tc.completed += 1
        tc.total_time_s += d
        self._p_completed.labels(job_type=str(job_type)).inc()
        self._p_seconds.labels(job_type=str(job_type)).observe(d)
        self._touch()

    def job_failed(self, job_type: str) -> None:
        self.total_failed += 1
        self._finished()
        self._type(job_type).failed += 1
        self._p_failed.labels(job_type=str(job_type)).inc()
        self._touch()

    def job_timed_out(self, job_type: str) -> None:
        self.total_timed_out += 1
        self._finished()
        self._type(job_type).timed_out += 1
        self._p_timed_out.labels(job_type=str(job_type)).inc()
        self._touch()

    def job_retried(self, job_type: str) -> None:
        self.total_retried += 1
        self._type(job_type).retried += 1
        self._p_retried.labels(job_type=str(job_type)).inc()
        self._touch()

    def record_queue_depth(self, depth: int) -> None:
        n = max(0, int(depth))
        self.current_queue_depth = n
        self.peak_queue_depth = max(self.peak_queue_depth, n)
        self._depths.append(n)
        self._p_depth.set(n)

    # --- derived ---
    @property
    def success_rate(self) -> float:
        total = self.total_completed + self.total_failed
        return (self.total_completed / total) if total else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.total_completed + self.total_failed
        return (self.total_failed / total) if total else 0.0

    @property
    def timeout_rate(self) -> float:
        return (self.total_timed_out / self.total_started) if self.total_started else 0.0

    @property
    def average_processing_time_s(self) -> float:
        if not self._durations:
            return 0.0
        return sum(self._durations) / len(self._durations)

    @property
    def min_processing_time_s(self) -> float:
        return min(self._durations) if self._durations else 0.0

    @property
    def max_processing_time_s(self) -> float:
        return max(self._durations) if self._durations else 0.0

    def percentile(self, p: float) -> float:
        """Nearest-rank percentile over the sampled durations (p in 0..100)."""
        if not self._durations:
            return 0.0
        ordered = sorted(self._durations)
        rank = math.ceil(max(0.0, min(100.0, float(p))) / 100.0 * len(ordered))
        return ordered[max(0, rank - 1)]

    @property
    def average_queue_depth(self) -> float:
        if not self._depths:
            return 0.0
        return sum(self._depths) / len(self._depths)

    @property
    def uptime_s(self) -> float:
        return max(0.0, time.monotonic() - self._started_at)

    @property
    def throughput(self) -> float:
        """Completed jobs per second since construction / last reset."""
        up = self.uptime_s
        return (self.total_completed / up) if up > 0 else 0.0

    def type_stats(self, job_type: str) -> dict[str, Any]:
        return self._type(job_type).to_dict()

    def reset(self) -> None:
        self._reset_counts()

    # --- export ---
    def to_dict(self) -> dict[str, Any]:
        return {
            "driver": self.driver,
            "totals": {
                "queued": self.total_queued,
                "started": self.total_started,
                "completed": self.total_completed,
                "failed": self.total_failed,
                "retried": self.total_retried,
                "timed_out": self.total_timed_out,
                "currently_processing": self.currently_processing,
            },
            "rates": {
                "success_rate": round(self.success_rate, 6),
                "failure_rate": round(self.failure_rate, 6),
                "timeout_rate": round(self.timeout_rate, 6),
                "throughput_per_s": round(self.throughput, 6),
            },
            "processing_time_s": {
                "average": round(self.average_processing_time_s, 6),
                "min": round(self.min_processing_time_s, 6),
                "max": round(self.max_processing_time_s, 6),
                "p50": round(self.percentile(50), 6),
                "p95": round(self.percentile(95), 6),
                "p99": round(self.percentile(99), 6),
                "samples": len(self._durations),
            },
            "queue_depth": {
                "current": self.current_queue_depth,
                "average": round(self.average_queue_depth, 3),
                "peak": self.peak_queue_depth,
            },
            "by_type": {k: v.to_dict() for k, v in sorted(self._by_type.items())},
            "uptime_s": round(self.uptime_s, 3),
            "started_at": self._started_wall.isoformat(),
            "last_activity": self._last_activity.isoformat() if self._last_activity else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def to_prometheus(self) -> str:
        return generate_latest(self.registry).decode("utf-8")
