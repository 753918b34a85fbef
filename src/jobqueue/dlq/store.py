from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from jobqueue.dlq.models import FailedJob
from jobqueue.errors import ConfigurationError
from jobqueue.utils.io import read_json_file, write_json_atomic
from jobqueue.utils.locks import file_lock
from jobqueue.utils.log import logger


class DeadLetterStore(Protocol):
    """
    Durable record of permanently failed jobs.

    Records are append-only; only `remove`/`clear` (prune, retry) mutate.
    Listing is newest first.
    """

    async def store(self, job: FailedJob) -> None: ...
    async def get(self, job_id: str) -> FailedJob | None: ...
    async def get_all(self, *, limit: int | None = None, offset: int = 0) -> list[FailedJob]: ...
    async def get_by_type(self, job_type: str, *, limit: int | None = None) -> list[FailedJob]: ...
    async def get_by_date_range(self, start: datetime, end: datetime) -> list[FailedJob]: ...
    async def remove(self, job_id: str) -> bool: ...
    async def clear(self) -> None: ...
    async def count(self) -> int: ...
    async def get_stats(self) -> dict[str, Any]: ...


def _newest_first(jobs: list[FailedJob]) -> list[FailedJob]:
    return sorted(jobs, key=lambda j: j.failed_at, reverse=True)


def _page(jobs: list[FailedJob], limit: int | None, offset: int = 0) -> list[FailedJob]:
    start = max(0, int(offset))
    if limit is None:
        return jobs[start:]
    return jobs[start : start + max(0, int(limit))]


def _stats(jobs: list[FailedJob]) -> dict[str, Any]:
    by_type = Counter(j.job_type for j in jobs)
    by_error = Counter(j.error for j in jobs)
    ordered = sorted(jobs, key=lambda j: j.failed_at)
    return {
        "total": len(jobs),
        "byType": dict(by_type),
        "byError": dict(by_error),
        "oldestFailure": ordered[0].failed_at.isoformat() if ordered else None,
        "newestFailure": ordered[-1].failed_at.isoformat() if ordered else None,
    }


class InMemoryDeadLetterStore:
    """Process-local store (tests, single-process setups)."""

    def __init__(self) -> None:
        self._jobs: dict[str, FailedJob] = {}

    async def store(self, job: FailedJob) -> None:
        self._jobs[job.id] = job

    async def get(self, job_id: str) -> FailedJob | None:
        return self._jobs.get(str(job_id))

    async def get_all(self, *, limit: int | None = None, offset: int = 0) -> list[FailedJob]:
        return _page(_newest_first(list(self._jobs.values())), limit, offset)

    async def get_by_type(self, job_type: str, *, limit: int | None = None) -> list[FailedJob]:
        jobs = [j for j in self._jobs.values() if j.job_type == str(job_type)]
        return _page(_newest_first(jobs), limit)

    async def get_by_date_range(self, start: datetime, end: datetime) -> list[FailedJob]:
        jobs = [j for j in self._jobs.values() if start <= j.failed_at < end]
        return _newest_first(jobs)

    async def remove(self, job_id: str) -> bool:
        return self._jobs.pop(str(job_id), None) is not None

    async def clear(self) -> None:
        self._jobs.clear()

    async def count(self) -> int:
        return len(self._jobs)

    async def get_stats(self) -> dict[str, Any]:
        return _stats(list(self._jobs.values()))


class FileDeadLetterStore:
    """
    JSON array file of FailedJob records.

    - every mutation is load -> change -> atomic replace, under `<path>.lock`
    - reads go to disk so several processes share one store
    """

    def __init__(self, path: Path, *, use_lock: bool = True) -> None:
        self.path = Path(path)
        self.use_lock = bool(use_lock)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._mu = asyncio.Lock()

    def _load(self) -> list[FailedJob]:
        raw = read_json_file(self.path, [])
        if not isinstance(raw, list):
            logger.warning("dlq_file_invalid", path=str(self.path), kind=type(raw).__name__)
            return []
        out: list[FailedJob] = []
        for item in raw:
            if isinstance(item, dict) and item.get("id"):
                out.append(FailedJob.from_dict(item))
        return out

    def _save(self, jobs: list[FailedJob]) -> None:
        write_json_atomic(self.path, [j.to_dict() for j in jobs])

    def _read(self) -> list[FailedJob]:
        with file_lock(self._lock_path, enabled=self.use_lock):
            return self._load()

    def _store_sync(self, job: FailedJob) -> None:
        with file_lock(self._lock_path, enabled=self.use_lock):
            jobs = [j for j in self._load() if j.id != job.id]
            jobs.append(job)
            self._save(jobs)

    def _remove_sync(self, job_id: str) -> bool:
        with file_lock(self._lock_path, enabled=self.use_lock):
            jobs = self._load()
            kept = [j for j in jobs if j.id != str(job_id)]
            if len(kept) == len(jobs):
                return False
            self._save(kept)
            return True

    def _clear_sync(self) -> None:
        with file_lock(self._lock_path, enabled=self.use_lock):
            self._save([])

    async def store(self, job: FailedJob) -> None:
        async with self._mu:
            await asyncio.to_thread(self._store_sync, job)

    async def get(self, job_id: str) -> FailedJob | None:
        for j in await asyncio.to_thread(self._read):
            if j.id == str(job_id):
                return j
        return None

    async def get_all(self, *, limit: int | None = None, offset: int = 0) -> list[FailedJob]:
        jobs = await asyncio.to_thread(self._read)
        return _page(_newest_first(jobs), limit, offset)

    async def get_by_type(self, job_type: str, *, limit: int | None = None) -> list[FailedJob]:
        jobs = [j for j in await asyncio.to_thread(self._read) if j.job_type == str(job_type)]
        return _page(_newest_first(jobs), limit)

    async def get_by_date_range(self, start: datetime, end: datetime) -> list[FailedJob]:
        jobs = await asyncio.to_thread(self._read)
        return _newest_first([j for j in jobs if start <= j.failed_at < end])

    async def remove(self, job_id: str) -> bool:
        async with self._mu:
            return await asyncio.to_thread(self._remove_sync, job_id)

    async def clear(self) -> None:
        async with self._mu:
            await asyncio.to_thread(self._clear_sync)

    async def count(self) -> int:
        return len(await asyncio.to_thread(self._read))

    async def get_stats(self) -> dict[str, Any]:
        return _stats(await asyncio.to_thread(self._read))


def build_dead_letter_store(kind: str, *, path: Path | None = None, use_lock: bool = True) -> DeadLetterStore:
    k = str(kind or "memory").strip().lower()
    if k == "memory":
        return InMemoryDeadLetterStore()
    if k == "file":
        if path is None:
            raise ConfigurationError("file dead-letter store needs a path")
        return FileDeadLetterStore(Path(path), use_lock=use_lock)
    raise ConfigurationError(f"Unknown dead-letter store: {kind!r}")
