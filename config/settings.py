from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

_DRIVERS = {"memory", "file", "redis", "sync"}
_DLQ_DRIVERS = {"memory", "file"}
_BACKOFFS = {"fixed", "exponential"}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)


def _validate(s: Settings) -> None:
    problems: list[str] = []
    driver = str(s.public.queue_driver or "").strip().lower()
    if driver not in _DRIVERS:
        problems.append(f"QUEUE_DRIVER={driver!r} (expected one of {sorted(_DRIVERS)})")
    dlq = str(s.public.dlq_driver or "").strip().lower()
    if dlq not in _DLQ_DRIVERS:
        problems.append(f"DLQ_DRIVER={dlq!r} (expected one of {sorted(_DLQ_DRIVERS)})")
    backoff = str(s.public.queue_backoff or "").strip().lower()
    if backoff not in _BACKOFFS:
        problems.append(f"QUEUE_BACKOFF={backoff!r} (expected one of {sorted(_BACKOFFS)})")
    if int(s.public.queue_max_retries) < 0:
        problems.append("QUEUE_MAX_RETRIES must be >= 0")
    if float(s.public.queue_retry_delay_s) < 0:
        problems.append("QUEUE_RETRY_DELAY_S must be >= 0")
    if problems:
        raise ConfigError("Invalid queue configuration: " + "; ".join(problems))


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {"public": pub_s, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s
