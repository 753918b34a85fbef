from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar

from jobqueue.errors import ConfigurationError


class Job(ABC):
    """
    A unit of deferred work.

    Subclasses set a stable `type_name` (the identifier persisted alongside the
    payload; independent of the Python class name) and implement:
      - `handle()`: the work itself (coroutine, or a plain function which is run
        in a worker thread)
      - `serialize()`: JSON-safe payload that `from_payload()` can rebuild from

    Retry/timeout policy lives on the job kind as class attributes.
    `max_retries` / `retry_delay_s` may be set to None to defer to the driver's
    config.
    """

    type_name: ClassVar[str] = ""

    max_retries: int | None = 3
    retry_delay_s: float | None = 30.0
    timeout_s: float | None = None
    should_retry: bool = True
    queue_name: str = "default"

    @abstractmethod
    def handle(self) -> Any:
        raise NotImplementedError

    @abstractmethod
    def serialize(self) -> dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Job:
        return cls(**dict(payload or {}))

    @property
    def job_type(self) -> str:
        return str(self.type_name or type(self).__name__)

    @property
    def display_name(self) -> str:
        return self.job_type

    async def run(self) -> Any:
        """Await `handle()`; sync implementations run off the event loop."""
        if inspect.iscoroutinefunction(self.handle):
            return await self.handle()
        res = await asyncio.to_thread(self.handle)
        if inspect.isawaitable(res):
            return await res
        return res

    def __repr__(self) -> str:
        return f"<{type(self).__name__} type={self.job_type!r}>"


class UnresolvedJob(Job):
    """
    Placeholder for a persisted job whose type can't be rebuilt.

    Keeps the original type name and payload so the record dead-letters intact
    instead of being dropped.
    """

    should_retry = False
    max_retries = 0

    def __init__(self, type_name: str, payload: dict[str, Any], error: ConfigurationError) -> None:
        self._type_name = str(type_name)
        self._payload = dict(payload or {})
        self.error = error

    @property
    def job_type(self) -> str:
        return self._type_name

    async def handle(self) -> Any:
        raise self.error

    def serialize(self) -> dict[str, Any]:
        return dict(self._payload)


class CallableJob(Job):
    """
    Wraps a callable as an ad-hoc job.

    Only meaningful for in-process drivers: the callable itself is not
    persisted, so a file/redis driver can't rebuild it.
    """

    type_name = "callable"

    def __init__(
        self,
        fn: Callable[..., Any | Awaitable[Any]],
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.name = str(name or getattr(fn, "__name__", "callable"))

    @property
    def display_name(self) -> str:
        return f"callable:{self.name}"

    async def handle(self) -> Any:
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(*self.args, **self.kwargs)
        res = await asyncio.to_thread(self.fn, *self.args, **self.kwargs)
        if inspect.isawaitable(res):
            return await res
        return res

    def serialize(self) -> dict[str, Any]:
        return {"name": self.name}
