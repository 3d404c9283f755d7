"""Persistent priority queue repository for agent jobs."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from agent_dispatch.jobs.models import (
    AgentSessionView,
    JobCreate,
    JobDetails,
    JobEventView,
    JobPriority,
    JobStateError,
    JobStatus,
    JobView,
)
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import AgentSessionRecord, JobEventRecord, JobRecord

logger = logging.getLogger(__name__)

ORPHANED_JOB_ERROR = "Job was still active when the worker restarted."


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Lifecycle state is the ``status`` column; every transition is a single
    conditional UPDATE, so a job is observable in exactly one state. The
    partial unique index ``uq_jobs_single_active`` keeps a second active row
    out even when two processes race past the pre-checks.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        if not payload.task or not payload.task.strip():
            raise ValueError("Job task cannot be empty.")
        try:
            priority = JobPriority(payload.priority)
        except ValueError as error:
            allowed = ", ".join(f"{item.name}={item.value}" for item in JobPriority)
            raise ValueError(
                f"Unsupported job priority: {payload.priority!r}. Expected one of {allowed}.",
            ) from error
        if payload.retry_count < 0:
            raise ValueError("retry_count must be >= 0.")

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            row = JobRecord(
                job_id=job_id,
                task=payload.task,
                chat_id=payload.chat_id,
                source=payload.source,
                phone_number=payload.phone_number,
                priority=int(priority),
                status=JobStatus.PENDING.value,
                session_code=payload.session_code,
                retry_count=payload.retry_count,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            # job_events has no ORM relationship; the parent row must exist first.
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "source": payload.source,
                    "priority": int(priority),
                    "retry_count": payload.retry_count,
                },
            )
            session.commit()
            session.refresh(row)
            logger.debug("Enqueued job %s (priority=%s source=%s)", job_id, priority.name, row.source)
            return _to_job_view(row)

    def get_pending_jobs(self) -> list[JobView]:
        """Return pending jobs in execution order."""

        with Session(self.engine) as session:
            rows = session.exec(_pending_in_order()).all()
        return [_to_job_view(row) for row in rows]

    def get_next_job(self) -> JobView | None:
        """Return the head of the pending queue without claiming it."""

        with Session(self.engine) as session:
            row = session.exec(_pending_in_order().limit(1)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_active_job(self) -> JobView | None:
        """Return the single active job, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobRecord).where(JobRecord.status == JobStatus.ACTIVE.value),
            ).first()
        return _to_job_view(row) if row is not None else None

    def get_queue_depth(self) -> int:
        """Count pending jobs only."""

        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(JobRecord)
                .where(JobRecord.status == JobStatus.PENDING.value),
            ).one()

    def get_job(self, job_id: str) -> JobView | None:
        """Look up a job in any state."""

        with Session(self.engine) as session:
            row = session.get(JobRecord, job_id)
        return _to_job_view(row) if row is not None else None

    def mark_active(self, job_id: str) -> JobView:
        """Move a pending job to active; at most one job may be active."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.status != JobStatus.PENDING.value:
                raise JobStateError(
                    f"Job {job_id} cannot be activated from status={row.status}.",
                    job_id=job_id,
                )
            active_id = session.exec(
                select(JobRecord.job_id).where(JobRecord.status == JobStatus.ACTIVE.value),
            ).first()
            if active_id is not None:
                raise JobStateError(
                    f"Job {job_id} cannot be activated while job {active_id} is active.",
                    job_id=job_id,
                )

            try:
                result = session.exec(
                    sa_update(JobRecord)
                    .where(
                        col(JobRecord.job_id) == job_id,
                        col(JobRecord.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        started_at=to_db_datetime(now),
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise JobStateError(
                    f"Job {job_id} lost the race for the active slot.",
                    job_id=job_id,
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    f"Job state changed concurrently while activating (job_id={job_id}).",
                    job_id=job_id,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="activated",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.ACTIVE,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def mark_completed(self, job_id: str, result: str) -> JobView:
        """Move the active job to completed with its result."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            values={"result": result},
            details={"result_chars": len(result)},
        )

    def mark_failed(self, job_id: str, error: str) -> JobView:
        """Move the active job to failed with its error."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.FAILED,
            values={"error": error},
            details={"error": error[:500]},
        )

    def expire_old_jobs(self, max_age: timedelta) -> int:
        """Delete terminal jobs finished at least ``max_age`` ago."""

        if max_age < timedelta(0):
            raise ValueError("max_age must be >= 0.")
        try:
            cutoff = to_db_datetime(utc_now() - max_age)
        except OverflowError:
            return 0

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(JobRecord).where(
                    or_(
                        and_(
                            col(JobRecord.status) == JobStatus.COMPLETED.value,
                            col(JobRecord.completed_at) <= cutoff,
                        ),
                        and_(
                            col(JobRecord.status) == JobStatus.FAILED.value,
                            col(JobRecord.failed_at) <= cutoff,
                        ),
                    ),
                ),
            )
            session.commit()
        deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("Expired %d terminal jobs older than %s", deleted, max_age)
        return deleted

    def clear_queue(self) -> None:
        """Remove every job in every state."""

        with Session(self.engine) as session:
            session.exec(sa_delete(JobEventRecord))
            session.exec(sa_delete(JobRecord))
            session.commit()

    def recover_orphaned_active_jobs(self, *, stale_after: timedelta) -> int:
        """Fail active jobs whose worker is gone; returns how many were failed."""

        now = utc_now()
        try:
            cutoff = to_db_datetime(now - stale_after)
        except OverflowError:
            return 0

        recovered = 0
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(JobRecord.job_id).where(
                    JobRecord.status == JobStatus.ACTIVE.value,
                    col(JobRecord.started_at) <= cutoff,
                ),
            ).all()
            for job_id in stale_ids:
                result = session.exec(
                    sa_update(JobRecord)
                    .where(
                        col(JobRecord.job_id) == job_id,
                        col(JobRecord.status) == JobStatus.ACTIVE.value,
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        failed_at=to_db_datetime(now),
                        error=ORPHANED_JOB_ERROR,
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="recovered_orphan",
                    status_from=JobStatus.ACTIVE,
                    status_to=JobStatus.FAILED,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
                recovered += 1
            session.commit()
        if recovered:
            logger.warning("Failed %d orphaned active job(s)", recovered)
        return recovered

    def requeue_failed(self, job_id: str) -> JobView:
        """Enqueue a fresh copy of a failed job with an incremented retry count."""

        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.status != JobStatus.FAILED.value:
                raise JobStateError(
                    f"Only failed jobs can be requeued, got status={row.status}.",
                    job_id=job_id,
                )
            payload = JobCreate(
                task=row.task,
                source=row.source,
                chat_id=row.chat_id,
                priority=row.priority,
                phone_number=row.phone_number,
                session_code=row.session_code,
                retry_count=row.retry_count + 1,
            )

        requeued = self.enqueue(payload)
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="requeued",
                status_from=None,
                status_to=None,
                details={"new_job_id": requeued.job_id, "retry_count": requeued.retry_count},
            )
            session.commit()
        return requeued

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(JobRecord).order_by(col(JobRecord.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(JobRecord.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            row = session.get(JobRecord, job_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEventRecord)
                .where(JobEventRecord.job_id == job_id)
                .order_by(col(JobEventRecord.created_at).asc(), col(JobEventRecord.id).asc()),
            ).all()
            job = _to_job_view(row)

        events: list[JobEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)

    def get_agent_session(self, session_code: str) -> AgentSessionView | None:
        """Agent session id previously recorded for a session code."""

        with Session(self.engine) as session:
            row = session.get(AgentSessionRecord, session_code)
        if row is None:
            return None
        return AgentSessionView(
            session_code=row.session_code,
            agent_session_id=row.agent_session_id,
            created_at=to_utc_aware_datetime(row.created_at),
            last_activity_at=to_utc_aware_datetime(row.last_activity_at),
        )

    def record_agent_session(self, *, session_code: str, agent_session_id: str) -> None:
        """Remember the agent session id so later jobs can resume it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(AgentSessionRecord, session_code)
            if row is None:
                row = AgentSessionRecord(
                    session_code=session_code,
                    agent_session_id=agent_session_id,
                    created_at=now,
                    last_activity_at=now,
                )
            else:
                row.agent_session_id = agent_session_id
                row.last_activity_at = now
            session.add(row)
            session.commit()

    def _finish(
        self,
        *,
        job_id: str,
        status: JobStatus,
        values: dict[str, object],
        details: dict[str, object],
    ) -> JobView:
        now = to_db_datetime(utc_now())
        stamp = {"completed_at": now} if status == JobStatus.COMPLETED else {"failed_at": now}
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.status != JobStatus.ACTIVE.value:
                raise JobStateError(
                    f"Job {job_id} cannot move to {status.value} from status={row.status}.",
                    job_id=job_id,
                )
            result = session.exec(
                sa_update(JobRecord)
                .where(
                    col(JobRecord.job_id) == job_id,
                    col(JobRecord.status) == JobStatus.ACTIVE.value,
                )
                .values(status=status.value, **stamp, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    f"Job state changed concurrently while finishing (job_id={job_id}).",
                    job_id=job_id,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=status.value,
                status_from=JobStatus.ACTIVE,
                status_to=status,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def _get_job_row(self, *, session: Session, job_id: str) -> JobRecord:
        row = session.get(JobRecord, job_id)
        if row is None:
            raise JobStateError(f"Job not found: {job_id}", job_id=job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRecord(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _pending_in_order() -> SelectOfScalar[JobRecord]:
    return (
        select(JobRecord)
        .where(JobRecord.status == JobStatus.PENDING.value)
        .order_by(
            col(JobRecord.priority).desc(),
            col(JobRecord.created_at).asc(),
            col(JobRecord.job_id).asc(),
        )
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: JobRecord) -> JobView:
    return JobView(
        job_id=row.job_id,
        task=row.task,
        chat_id=row.chat_id,
        source=row.source,
        phone_number=row.phone_number,
        priority=row.priority,
        status=JobStatus(row.status),
        session_code=row.session_code,
        retry_count=row.retry_count,
        result=row.result,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        failed_at=_optional_aware(row.failed_at),
    )
