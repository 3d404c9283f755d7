"""Durable priority job queue."""

from agent_dispatch.jobs.models import (
    JobCreate,
    JobPriority,
    JobStateError,
    JobStatus,
    JobView,
)
from agent_dispatch.jobs.repository import JobRepository

__all__ = [
    "JobCreate",
    "JobPriority",
    "JobRepository",
    "JobStateError",
    "JobStatus",
    "JobView",
]
