from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from jobqueue.config import get_settings

worker_id_var: ContextVar[str | None] = ContextVar("worker_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)


_URL_CREDS_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/\s]*):([^@/\s]+)@")
_KV_RE = re.compile(
    r"(?i)\b(redis_url|redis_password|password|passwd|secret|token|api_key)\b\s*=\s*([^\s,;]+)"
)


def _secret_literals() -> list[str]:
    """
    Configured secret values that must never appear in logs.
    Best-effort: returns [] if settings can't be loaded.
    """
    vals: list[str] = []
    try:
        sec = get_settings().secret
    except Exception:
        return vals
    pw = getattr(sec, "redis_password", None)
    if pw is not None and hasattr(pw, "get_secret_value"):
        raw = str(pw.get_secret_value() or "")
        if len(raw) >= 6:
            vals.append(raw)
    return vals


def _redact_str(s: str) -> str:
    with suppress(Exception):
        for lit in _secret_literals():
            if lit and lit in s:
                s = s.replace(lit, "***REDACTED***")
    s = _URL_CREDS_RE.sub(r"\1***REDACTED***@", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    wid = worker_id_var.get()
    jid = job_id_var.get()
    if wid:
        event_dict.setdefault("worker_id", wid)
    if jid:
        event_dict.setdefault("job_id", jid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    level = "INFO"
    log_dir: Path | None = None
    max_bytes = 5 * 1024 * 1024
    backups = 3
    try:
        s = get_settings()
        level = str(s.log_level or "INFO").upper()
        log_dir = Path(s.log_dir) if s.log_dir else None
        max_bytes = int(s.log_max_bytes)
        backups = int(s.log_backup_count)
    except Exception:
        # settings are validated again (and reported) by whoever uses them
        pass

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    # Avoid duplicates if re-imported
    if getattr(root, "_jobqueue_structlog_configured", False):
        return structlog.get_logger("jobqueue")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    handlers: list[logging.Handler] = []
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_dir / "jobqueue.log"),
            maxBytes=max_bytes,
            backupCount=backups,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    root.handlers.clear()
    for h in handlers:
        root.addHandler(h)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._jobqueue_structlog_configured = True
    return structlog.get_logger("jobqueue")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Runtime log level override (CLI convenience).
    Only changes filtering; handlers/formatters stay as configured.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
