from __future__ import annotations

from jobqueue.jobs.base import CallableJob, Job, UnresolvedJob
from jobqueue.jobs.context import JobContext, JobStatus
from jobqueue.jobs.registry import JobRegistry

__all__ = ["CallableJob", "Job", "JobContext", "JobRegistry", "JobStatus", "UnresolvedJob"]
