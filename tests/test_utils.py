from __future__ import annotations

import asyncio
import json
import threading
import time
from pathlib import Path

import pytest

from jobqueue.errors import JobTimeoutError
from jobqueue.utils.aio import race_timeout
from jobqueue.utils.io import read_json_file, write_json_atomic
from jobqueue.utils.locks import FileLockTimeout, file_lock


def test_race_timeout_returns_result() -> None:
    async def quick() -> str:
        return "done"

    assert asyncio.run(race_timeout(quick(), 1.0)) == "done"
    assert asyncio.run(race_timeout(quick(), None)) == "done"


def test_race_timeout_leaves_task_running() -> None:
    state = {"finished": False}

    async def slow() -> None:
        await asyncio.sleep(0.1)
        state["finished"] = True

    async def main() -> None:
        with pytest.raises(JobTimeoutError) as ei:
            await race_timeout(slow(), 0.02)
        assert ei.value.timeout_s == pytest.approx(0.02)
        assert state["finished"] is False
        await asyncio.sleep(0.15)

    asyncio.run(main())
    assert state["finished"] is True


def test_race_timeout_propagates_errors() -> None:
    async def bad() -> None:
        raise KeyError("k")

    with pytest.raises(KeyError):
        asyncio.run(race_timeout(bad(), 1.0))


def test_json_helpers(tmp_path: Path) -> None:
    p = tmp_path / "nested" / "data.json"
    assert read_json_file(p, []) == []
    write_json_atomic(p, [{"a": 1}])
    assert read_json_file(p, []) == [{"a": 1}]
    assert json.loads(p.read_text(encoding="utf-8")) == [{"a": 1}]
    assert list(p.parent.glob("*.tmp.*")) == []

    p.write_text("  ", encoding="utf-8")
    assert read_json_file(p, {"empty": True}) == {"empty": True}


def test_file_lock_is_exclusive(tmp_path: Path) -> None:
    lock = tmp_path / "jobs.json.lock"
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with file_lock(lock):
            held.set()
            release.wait(2.0)

    t = threading.Thread(target=holder)
    t.start()
    try:
        assert held.wait(2.0)
        t0 = time.monotonic()
        with pytest.raises(FileLockTimeout):
            with file_lock(lock, timeout_s=0.1, poll_interval_s=0.01):
                pass
        assert time.monotonic() - t0 >= 0.1
    finally:
        release.set()
        t.join()

    with file_lock(lock, timeout_s=0.5):
        pass
    with file_lock(lock, enabled=False):
        pass
