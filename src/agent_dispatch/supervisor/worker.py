"""Single-flight supervisor that runs queued jobs through the agent CLI."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from agent_dispatch.jobs.models import JobStateError, JobView
from agent_dispatch.jobs.repository import JobRepository
from agent_dispatch.supervisor.backend import (
    AgentBackend,
    AgentRunRequest,
    BackendRunError,
    CliAgentBackend,
)
from agent_dispatch.supervisor.enrichment import ContextEnricher
from agent_dispatch.supervisor.output import EnvelopeError, parse_result_envelope, strip_ansi

logger = logging.getLogger(__name__)

SendMessageCallback = Callable[[str, str], object]

CANCELLED_ERROR = "Cancelled by user"
KILLED_ERROR = "Agent process was killed before it finished"
EXIT_OUTPUT_LIMIT = 500
TASK_PREVIEW_CHARS = 50


@dataclass(slots=True)
class SupervisorRunSummary:
    """Aggregate supervisor counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    idle_polls: int = 0


@dataclass(slots=True)
class JobOutcome:
    """Classified result of one agent run, before it is persisted."""

    succeeded: bool
    text: str
    delivery: str
    timed_out: bool = False
    retryable: bool = False
    agent_session_id: str | None = None


@dataclass(slots=True)
class _InFlightRun:
    job: JobView
    callback: SendMessageCallback | None
    cancel_event: threading.Event = field(default_factory=threading.Event)


class JobSupervisor:
    """Executes at most one job at a time and reports each result once."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        backend: AgentBackend | None = None,
        enricher: ContextEnricher | None = None,
        agent_command: str,
        resume_args: str = "--resume {session_id}",
        task_timeout_seconds: int = 1_800,
        graceful_shutdown_seconds: int = 5,
        stale_active_seconds: int = 3_600,
        poll_interval_seconds: float = 2.0,
        workdir: Path | None = None,
        max_spawn_retries: int = 1,
    ) -> None:
        self.repository = repository
        self.backend = backend or CliAgentBackend()
        self.enricher = enricher
        self.agent_command = agent_command
        self.resume_args = resume_args
        self.task_timeout_seconds = task_timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stale_active_seconds = stale_active_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.workdir = workdir
        self.max_spawn_retries = max_spawn_retries
        self._lock = threading.Lock()
        self._current: _InFlightRun | None = None
        self._send_message_callback: SendMessageCallback | None = None
        self._stop_requested = False

    def set_send_message_callback(self, callback: SendMessageCallback | None) -> None:
        """Register or clear the result delivery callback.

        The callback is captured when a job starts, so replacing it mid-run only
        affects jobs started afterwards.
        """

        self._send_message_callback = callback

    def is_processing(self) -> bool:
        return self._current is not None

    def get_current_session_code(self) -> str | None:
        run = self._current
        return run.job.session_code if run is not None else None

    def get_current_task(self) -> str | None:
        job = self.repository.get_active_job()
        return job.task if job is not None else None

    def kill_current_process(self) -> None:
        """Terminate the in-flight agent process, if any; safe to call when idle.

        The job itself is not marked failed here. The thread running the job
        records the kill once the process is gone, unless the caller finalized
        the job first.
        """

        with self._lock:
            run = self._current
            self._current = None
        if run is None:
            return
        logger.info("Kill requested for job %s", run.job.job_id)
        run.cancel_event.set()

    def cancel_job(self, session_code: str) -> bool:
        """Kill the in-flight job carrying ``session_code`` and fail it as cancelled."""

        with self._lock:
            run = self._current
            if run is None or run.job.session_code != session_code:
                return False
            self._current = None
        # Fail before signalling: the running thread's finalize must lose.
        try:
            self.repository.mark_failed(run.job.job_id, CANCELLED_ERROR)
        except JobStateError as error:
            logger.info("Job %s finished before cancellation: %s", run.job.job_id, error)
        else:
            logger.info("Cancelled job %s (session %s)", run.job.job_id, session_code)
        run.cancel_event.set()
        return True

    def process_next_job(self) -> bool:
        """Run the next pending job to a terminal state; ``False`` when nothing ran."""

        return self._process_next() is not None

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> SupervisorRunSummary:
        """Process jobs until the queue stays idle or ``max_jobs`` is reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Use a large value for a long-lived worker fed by producers.
        """

        aggregate = SupervisorRunSummary()
        consecutive_idle = 0
        self._stop_requested = False
        with self._signal_handlers():
            while not self._stop_requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break

                outcome = self._process_next()
                if outcome is None:
                    aggregate.idle_polls += 1
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                aggregate.processed += 1
                if outcome.succeeded:
                    aggregate.succeeded += 1
                else:
                    aggregate.failed += 1
                if outcome.timed_out:
                    aggregate.timeouts += 1
        return aggregate

    def _process_next(self) -> JobOutcome | None:
        run = self._claim()
        if run is None:
            return None
        try:
            try:
                outcome = self._execute(run)
            except Exception as error:  # noqa: BLE001
                logger.exception("Unexpected error while running job %s", run.job.job_id)
                outcome = _failure(f"Agent run failed: {error}")
            self._finalize(run, outcome)
        finally:
            with self._lock:
                if self._current is run:
                    self._current = None
        return outcome

    def _claim(self) -> _InFlightRun | None:
        with self._lock:
            if self._current is not None:
                return None
            self._recover_orphans()
            if self.repository.get_active_job() is not None:
                return None
            job = self.repository.get_next_job()
            if job is None:
                return None
            try:
                job = self.repository.mark_active(job.job_id)
            except JobStateError as error:
                logger.info("Could not claim job %s: %s", job.job_id, error)
                return None
            run = _InFlightRun(job=job, callback=self._send_message_callback)
            self._current = run
        logger.info("Starting job %s: %s", job.job_id, _preview(job.task))
        return run

    def _recover_orphans(self) -> None:
        if self.stale_active_seconds <= 0:
            return
        self.repository.recover_orphaned_active_jobs(
            stale_after=timedelta(seconds=self.stale_active_seconds),
        )

    def _execute(self, run: _InFlightRun) -> JobOutcome:
        job = run.job
        prompt = self.enricher.enrich_if_applicable(job) if self.enricher else job.task
        request = AgentRunRequest(
            prompt=prompt,
            command_template=self.agent_command,
            timeout_seconds=self.task_timeout_seconds,
            resume_template=self.resume_args,
            resume_session_id=self._resume_session_id(job),
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            workdir=self.workdir,
            cancel_event=run.cancel_event,
        )
        try:
            execution = self.backend.run(request)
        except BackendRunError as error:
            return JobOutcome(
                succeeded=False,
                text=str(error),
                delivery=str(error),
                retryable=error.transient,
            )

        if execution.timed_out:
            return JobOutcome(
                succeeded=False,
                text=f"Task timed out after {_format_duration(self.task_timeout_seconds)}",
                delivery=f"Task timed out: {job.task[:TASK_PREVIEW_CHARS]}...",
                timed_out=True,
            )
        if execution.cancelled:
            return _failure(KILLED_ERROR)

        stdout = strip_ansi(execution.stdout)
        if execution.exit_code != 0:
            output = stdout.strip() or strip_ansi(execution.stderr).strip() or "no output"
            return _failure(f"Exit code {execution.exit_code}: {output[:EXIT_OUTPUT_LIMIT]}")
        try:
            envelope = parse_result_envelope(stdout)
        except EnvelopeError as error:
            return _failure(f"Malformed agent output: {error}")
        return JobOutcome(
            succeeded=True,
            text=envelope.result,
            delivery=envelope.result,
            agent_session_id=envelope.session_id,
        )

    def _resume_session_id(self, job: JobView) -> str | None:
        if not job.session_code:
            return None
        session = self.repository.get_agent_session(job.session_code)
        return session.agent_session_id if session is not None else None

    def _finalize(self, run: _InFlightRun, outcome: JobOutcome) -> None:
        job = run.job
        try:
            if outcome.succeeded:
                self.repository.mark_completed(job.job_id, outcome.text)
            else:
                self.repository.mark_failed(job.job_id, outcome.text)
        except JobStateError as error:
            logger.warning("Job %s was finalized elsewhere, not delivering: %s", job.job_id, error)
            return

        if outcome.succeeded:
            logger.info("Completed job %s", job.job_id)
            if job.session_code and outcome.agent_session_id:
                self.repository.record_agent_session(
                    session_code=job.session_code,
                    agent_session_id=outcome.agent_session_id,
                )
        else:
            logger.warning("Job %s failed: %s", job.job_id, _preview(outcome.text, 200))
            if outcome.retryable and job.retry_count < self.max_spawn_retries:
                retry = self.repository.requeue_failed(job.job_id)
                logger.info(
                    "Re-queued job %s as %s after a transient spawn error",
                    job.job_id,
                    retry.job_id,
                )
                return
        self._deliver(run, outcome.delivery)

    def _deliver(self, run: _InFlightRun, message: str) -> None:
        if run.callback is None or run.job.chat_id is None:
            return
        try:
            run.callback(run.job.chat_id, message)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to deliver result of job %s", run.job.job_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            self._request_stop(signal.Signals(signum).name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, signal_name: str) -> None:
        # Runs inside a signal handler: no locks.
        self._stop_requested = True
        run = self._current
        logger.warning("Received %s, stopping supervisor", signal_name)
        if run is not None:
            run.cancel_event.set()


def _failure(error: str) -> JobOutcome:
    return JobOutcome(succeeded=False, text=error, delivery=error)


def _format_duration(seconds: int) -> str:
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds} second" if seconds == 1 else f"{seconds} seconds"


def _preview(text: str, limit: int = TASK_PREVIEW_CHARS) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
