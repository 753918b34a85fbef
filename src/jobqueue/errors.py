from __future__ import annotations


class QueueError(RuntimeError):
    """Base class for every error raised by the queue engine."""


class ConfigurationError(QueueError):
    """Unknown driver type, bad driver config, or an unusable job type."""


class JobRegistrationError(ConfigurationError):
    pass


class JobNotRegisteredError(ConfigurationError):
    def __init__(self, type_name: str) -> None:
        super().__init__(f"Job type not registered: {type_name!r}")
        self.type_name = str(type_name)


class JobDeserializationError(ConfigurationError):
    def __init__(self, type_name: str, reason: str) -> None:
        super().__init__(f"Failed to deserialize job {type_name!r}: {reason}")
        self.type_name = str(type_name)
        self.reason = str(reason)


class ConnectivityError(QueueError):
    """Storage backend unreachable."""


class JobTimeoutError(QueueError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Job timed out after {float(timeout_s):g}s")
        self.timeout_s = float(timeout_s)


class MiddlewareError(QueueError):
    """A middleware flagged the execution as failed with a plain message."""


class InvalidTransitionError(QueueError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid job status transition: {current} -> {target}")
        self.current = str(current)
        self.target = str(target)
