"""CLI entrypoint for agent-dispatch."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.jobs.models import JobPriority, JobStateError, JobStatus
from agent_dispatch.supervisor.controllers import (
    DispatchCliController,
    EnqueueCommand,
    ExpireCommand,
    JobIdCommand,
    ListJobsCommand,
    QueueCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to AGENT_DISPATCH_LOG_LEVEL or WARNING).",
)
def agent_dispatch(log_level: str | None) -> None:
    """Priority job queue and single-flight agent supervisor."""

    level = (log_level or os.getenv("AGENT_DISPATCH_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.command("enqueue")
@_db_path_option
@click.option("--task", required=True, help="Task text handed to the agent.")
@click.option("--source", default="cli", show_default=True, help="Producer tag.")
@click.option("--chat-id", default=None, help="Destination for the result message.")
@click.option(
    "--priority",
    type=click.Choice([item.name for item in JobPriority], case_sensitive=False),
    default=JobPriority.NORMAL.name,
    show_default=True,
    help="Priority tier.",
)
@click.option("--phone-number", default=None, help="Sender identifier for context enrichment.")
@click.option("--session-code", default=None, help="Session to resume in the agent.")
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    task: str,
    source: str,
    chat_id: str | None,
    priority: str,
    phone_number: str | None,
    session_code: str | None,
) -> None:
    """Add a job to the pending queue."""

    _run(
        lambda: CONTROLLER.enqueue(
            EnqueueCommand(
                db_path=db_path,
                task=task,
                source=source,
                chat_id=chat_id,
                priority=priority,
                phone_number=phone_number,
                session_code=session_code,
            ),
        ),
    )


@agent_dispatch.command("worker")
@_db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one job or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the supervisor against the queue."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@agent_dispatch.command("status")
@_db_path_option
def status(db_path: Path | None) -> None:
    """Show queue depth, the active job and the next job."""

    _run(lambda: CONTROLLER.status(QueueCommand(db_path=db_path)))


@agent_dispatch.command("jobs")
@_db_path_option
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([item.value for item in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status_filter: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        lambda: CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, status=status_filter, limit=limit),
        ),
    )


@agent_dispatch.command("inspect")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _run(lambda: CONTROLLER.inspect_job(JobIdCommand(db_path=db_path, job_id=job_id)))


@agent_dispatch.command("retry")
@_db_path_option
@click.option("--job-id", required=True, help="Failed job id.")
def retry(db_path: Path | None, job_id: str) -> None:
    """Enqueue a fresh copy of a failed job."""

    _run(lambda: CONTROLLER.retry_job(JobIdCommand(db_path=db_path, job_id=job_id)))


@agent_dispatch.command("expire")
@_db_path_option
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Age threshold (defaults to AGENT_DISPATCH_JOB_RETENTION_DAYS).",
)
def expire(db_path: Path | None, days: int | None) -> None:
    """Delete completed and failed jobs older than the threshold."""

    _run(lambda: CONTROLLER.expire(ExpireCommand(db_path=db_path, days=days)))


@agent_dispatch.command("clear")
@_db_path_option
@click.option("--yes", is_flag=True, default=False, help="Confirm removing every job.")
def clear(db_path: Path | None, yes: bool) -> None:
    """Remove every job regardless of state."""

    if not yes:
        raise click.ClickException("Refusing to clear the queue without --yes.")
    _run(lambda: CONTROLLER.clear(QueueCommand(db_path=db_path)))


@agent_dispatch.command("recover")
@_db_path_option
def recover(db_path: Path | None) -> None:
    """Fail active jobs left behind by a dead worker."""

    _run(lambda: CONTROLLER.recover(QueueCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (JobStateError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
