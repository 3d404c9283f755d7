"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class JobPriority(IntEnum):
    """Fixed priority tiers; higher value runs first."""

    CRITICAL = 100
    HIGH = 75
    NORMAL = 50
    LOW = 25


class JobStateError(RuntimeError):
    """Queue operation rejected because the job is not in the required state."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    task: str
    source: str
    chat_id: str | None = None
    priority: int = JobPriority.NORMAL
    phone_number: str | None = None
    session_code: str | None = None
    retry_count: int = 0


@dataclass(slots=True)
class JobView:
    """Readable job view for the supervisor and CLI."""

    job_id: str
    task: str
    chat_id: str | None
    source: str
    phone_number: str | None
    priority: int
    status: JobStatus
    session_code: str | None
    retry_count: int
    result: str | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None

    @property
    def finished_at(self) -> datetime | None:
        """Terminal timestamp, whichever of completed/failed applies."""

        return self.completed_at or self.failed_at


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class AgentSessionView:
    """Agent-side session id tracked for a session code."""

    session_code: str
    agent_session_id: str
    created_at: datetime
    last_activity_at: datetime
