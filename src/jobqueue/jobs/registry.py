from __future__ import annotations

from typing import Any, Callable, Mapping

from jobqueue.errors import (
    ConfigurationError,
    JobDeserializationError,
    JobNotRegisteredError,
    JobRegistrationError,
)
from jobqueue.jobs.base import Job, UnresolvedJob
from jobqueue.utils.log import logger

JobFactory = Callable[[dict[str, Any]], Job]


class JobRegistry:
    """
    type name -> factory that rebuilds a Job from its serialized payload.

    Persistent drivers need this to turn stored records back into executable
    jobs. One instance is shared by every driver of a process.
    """

    def __init__(self) -> None:
        self._factories: dict[str, JobFactory] = {}

    def register(self, type_name: str, factory: JobFactory) -> None:
        name = str(type_name or "").strip()
        if not name:
            raise JobRegistrationError("Job type name must be non-empty")
        if name in self._factories:
            raise JobRegistrationError(f"Job type already registered: {name!r}")
        self._factories[name] = factory
        logger.debug("job_type_registered", job_type=name)

    def register_class(self, job_cls: type[Job]) -> None:
        self.register(str(getattr(job_cls, "type_name", "") or ""), job_cls.from_payload)

    def register_all(self, factories: Mapping[str, JobFactory]) -> None:
        for name, factory in factories.items():
            self.register(name, factory)

    def create(self, type_name: str, payload: dict[str, Any]) -> Job:
        factory = self._factories.get(str(type_name))
        if factory is None:
            raise JobNotRegisteredError(type_name)
        try:
            return factory(dict(payload or {}))
        except Exception as ex:
            raise JobDeserializationError(type_name, f"{type(ex).__name__}: {ex}") from ex

    def resolve(self, type_name: str, payload: dict[str, Any]) -> Job:
        """
        Like `create()`, but never raises.

        Unknown or broken types become an `UnresolvedJob` so the caller can
        route them through the normal failure path.
        """
        try:
            return self.create(type_name, payload)
        except ConfigurationError as ex:
            logger.warning("job_unresolved", job_type=str(type_name), error=str(ex))
            return UnresolvedJob(str(type_name), dict(payload or {}), ex)

    def is_registered(self, type_name: str) -> bool:
        return str(type_name) in self._factories

    def registered_types(self) -> list[str]:
        return list(self._factories.keys())

    def unregister(self, type_name: str) -> bool:
        return self._factories.pop(str(type_name), None) is not None

    def clear(self) -> None:
        self._factories.clear()

    def get_stats(self) -> dict[str, Any]:
        return {"registered_count": len(self._factories), "types": self.registered_types()}

    def __len__(self) -> int:
        return len(self._factories)

    def __contains__(self, type_name: object) -> bool:
        return isinstance(type_name, str) and type_name in self._factories
