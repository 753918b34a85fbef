from __future__ import annotations

from jobqueue.dlq.handler import FailedJobHandler
from jobqueue.dlq.models import FailedJob
from jobqueue.dlq.store import (
    DeadLetterStore,
    FileDeadLetterStore,
    InMemoryDeadLetterStore,
    build_dead_letter_store,
)

__all__ = [
    "DeadLetterStore",
    "FailedJob",
    "FailedJobHandler",
    "FileDeadLetterStore",
    "InMemoryDeadLetterStore",
    "build_dead_letter_store",
]
