"""Controllers for queue and supervisor CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_dispatch.config import Settings
from agent_dispatch.jobs.models import JobCreate, JobPriority, JobStatus
from agent_dispatch.jobs.repository import JobRepository
from agent_dispatch.supervisor.backend import CliAgentBackend
from agent_dispatch.supervisor.contacts import JsonContactBook
from agent_dispatch.supervisor.enrichment import ContextEnricher
from agent_dispatch.supervisor.worker import JobSupervisor

DELIVERY_PREVIEW_CHARS = 200


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    task: str
    source: str
    chat_id: str | None
    priority: str
    phone_number: str | None
    session_code: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for supervisor execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobIdCommand:
    """CLI input for single-job operations (inspect, retry)."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ExpireCommand:
    """CLI input for terminal job cleanup."""

    db_path: Path | None
    days: int | None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for whole-queue operations."""

    db_path: Path | None


class DispatchCliController:
    """Coordinates queue, supervisor, and inspection CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.enqueue(
                JobCreate(
                    task=command.task,
                    source=command.source,
                    chat_id=command.chat_id,
                    priority=_parse_priority(command.priority),
                    phone_number=command.phone_number,
                    session_code=command.session_code,
                ),
            )
            depth = repository.get_queue_depth()

        return [
            f"Job enqueued: job_id={job.job_id} priority={JobPriority(job.priority).name} "
            f"status={job.status.value}",
            f"Queue depth: {depth}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        delivered: list[str] = []
        with _repository(settings) as repository:
            supervisor = _build_supervisor(settings=settings, repository=repository)
            supervisor.set_send_message_callback(
                lambda chat_id, message: delivered.append(
                    f"  -> {chat_id}: {_one_line(message)}",
                ),
            )
            summary = supervisor.run_loop(
                max_jobs=1 if command.once else command.max_jobs,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"idle_polls={summary.idle_polls}",
            *delivered,
        ]

    def status(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            depth = repository.get_queue_depth()
            active = repository.get_active_job()
            next_job = repository.get_next_job()

        lines = [f"Queue depth: {depth}"]
        if active is None:
            lines.append("Active: -")
        else:
            started = active.started_at.isoformat() if active.started_at else "-"
            lines.append(f"Active: {active.job_id} started_at={started} task={_one_line(active.task)}")
        if next_job is not None:
            lines.append(
                f"Next: {next_job.job_id} priority={JobPriority(next_job.priority).name} "
                f"task={_one_line(next_job.task)}",
            )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} priority={job.priority} "
                f"source={job.source} retry={job.retry_count} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Source: {job.source}",
            f"Chat: {job.chat_id or '-'}",
            f"Session: {job.session_code or '-'}",
            f"Retry count: {job.retry_count}",
            f"Task: {job.task}",
            f"Result: {job.result if job.result is not None else '-'}",
            f"Error: {job.error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobIdCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.requeue_failed(command.job_id)
        return [f"Job re-queued: {command.job_id} -> {job.job_id} (retry {job.retry_count})"]

    def expire(self, command: ExpireCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        days = command.days if command.days is not None else settings.supervisor.job_retention_days
        with _repository(settings) as repository:
            deleted = repository.expire_old_jobs(timedelta(days=days))
        return [f"Expired jobs: {deleted} (older than {days} days)"]

    def clear(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.clear_queue()
        return ["Queue cleared."]

    def recover(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            recovered = repository.recover_orphaned_active_jobs(
                stale_after=timedelta(seconds=settings.supervisor.stale_active_seconds),
            )
        return [f"Recovered orphaned jobs: {recovered}"]


def _build_supervisor(*, settings: Settings, repository: JobRepository) -> JobSupervisor:
    enricher = None
    enrichment = settings.enrichment
    if enrichment.enabled and enrichment.contacts_path is not None:
        enricher = ContextEnricher(
            contacts=JsonContactBook(enrichment.contacts_path),
            source=enrichment.source,
            history_limit=enrichment.history_limit,
            assistant_name=enrichment.assistant_name,
            owner_name=enrichment.owner_name,
        )
    supervisor_settings = settings.supervisor
    return JobSupervisor(
        repository=repository,
        backend=CliAgentBackend(),
        enricher=enricher,
        agent_command=supervisor_settings.agent_command,
        resume_args=supervisor_settings.resume_args,
        task_timeout_seconds=supervisor_settings.task_timeout_seconds,
        graceful_shutdown_seconds=supervisor_settings.graceful_shutdown_seconds,
        stale_active_seconds=supervisor_settings.stale_active_seconds,
        poll_interval_seconds=supervisor_settings.poll_interval_seconds,
        workdir=supervisor_settings.workdir,
        max_spawn_retries=supervisor_settings.max_spawn_retries,
    )


def _parse_priority(value: str) -> JobPriority:
    normalized = value.strip().upper()
    if normalized.isdigit():
        return JobPriority(int(normalized))
    try:
        return JobPriority[normalized]
    except KeyError as error:
        raise ValueError(f"Unsupported job priority: {value!r}") from error


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


def _one_line(text: str) -> str:
    compact = " ".join(text.split())
    if len(compact) <= DELIVERY_PREVIEW_CHARS:
        return compact
    return compact[:DELIVERY_PREVIEW_CHARS] + "..."


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
