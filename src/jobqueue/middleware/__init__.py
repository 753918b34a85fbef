from __future__ import annotations

from jobqueue.middleware.builtin import (
    LoggingMiddleware,
    PayloadValidationMiddleware,
    RateLimitMiddleware,
)
from jobqueue.middleware.pipeline import MiddlewareContext, MiddlewarePipeline, QueueMiddleware

__all__ = [
    "LoggingMiddleware",
    "MiddlewareContext",
    "MiddlewarePipeline",
    "PayloadValidationMiddleware",
    "QueueMiddleware",
    "RateLimitMiddleware",
]
