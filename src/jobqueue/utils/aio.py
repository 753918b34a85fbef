from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

from jobqueue.errors import JobTimeoutError
from jobqueue.utils.log import logger

T = TypeVar("T")


def _discard_result(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    ex = task.exception()
    if ex is not None:
        logger.debug("abandoned_task_error", task=task.get_name(), error=f"{type(ex).__name__}: {ex}")


async def race_timeout(aw: Awaitable[T], timeout_s: float | None, *, name: str = "jobqueue.job") -> T:
    """
    Await `aw`, giving up after `timeout_s` with JobTimeoutError.

    Cooperative: on timeout the underlying task is NOT cancelled; it keeps
    running and its eventual result/exception is dropped.
    """
    if timeout_s is None or float(timeout_s) <= 0:
        return await aw
    task = asyncio.ensure_future(aw)
    if isinstance(task, asyncio.Task):
        task.set_name(name)
    done, _ = await asyncio.wait({task}, timeout=float(timeout_s))
    if task in done:
        return task.result()
    task.add_done_callback(_discard_result)
    raise JobTimeoutError(float(timeout_s))
