"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from typing import IO

from agent_dispatch.supervisor.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Spawn the agent CLI from a command template and supervise it."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        run_args = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            resume_template=request.resume_template,
            resume_session_id=request.resume_session_id,
        )

        env = os.environ.copy()
        env["FORCE_COLOR"] = "0"
        env["NO_COLOR"] = "1"

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                cwd=request.workdir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error
        except ValueError as error:
            # Popen rejects arguments it cannot pass to exec, e.g. NUL bytes.
            raise BackendRunError(
                f"Agent failed to start: {error}",
                transient=False,
            ) from error

        logger.debug("Spawned agent pid=%s: %s", process.pid, run_args[0])
        return _supervise_process(
            process=process,
            timeout_seconds=request.timeout_seconds,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
            cancel_event=request.cancel_event,
            poll_interval_seconds=self.poll_interval_seconds,
        )


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    resume_template: str = "",
    resume_session_id: str | None = None,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt}.",
            transient=False,
        )

    try:
        argv = shlex.split(stripped.format(prompt=shlex.quote(prompt)))
        if resume_session_id and resume_template.strip():
            argv.extend(
                shlex.split(resume_template.format(session_id=shlex.quote(resume_session_id))),
            )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except ValueError as error:
        raise BackendRunError(f"Invalid agent command template: {error}", transient=False) from error

    if not argv:
        raise BackendRunError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _supervise_process(
    *,
    process: subprocess.Popen[str],
    timeout_seconds: int,
    graceful_shutdown_seconds: int,
    cancel_event: threading.Event | None,
    poll_interval_seconds: float,
) -> AgentRunResult:
    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []
    readers = [
        _start_reader(process.stdout, stdout_chunks),
        _start_reader(process.stderr, stderr_chunks),
    ]

    start_monotonic = time.monotonic()
    timed_out = False
    cancelled = False
    while process.poll() is None:
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            _terminate_process(process, grace_seconds=graceful_shutdown_seconds)
            break
        if time.monotonic() - start_monotonic >= timeout_seconds:
            timed_out = True
            logger.warning(
                "Agent pid=%s exceeded %ss timeout, terminating",
                process.pid,
                timeout_seconds,
            )
            _terminate_process(process, grace_seconds=graceful_shutdown_seconds)
            break
        if cancel_event is not None:
            cancel_event.wait(poll_interval_seconds)
        else:
            time.sleep(poll_interval_seconds)

    # Grandchildren can keep the pipes open after the agent itself exits.
    for reader in readers:
        reader.join(timeout=max(1.0, float(graceful_shutdown_seconds)))

    exit_code = process.returncode
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
    return AgentRunResult(
        exit_code=exit_code,
        timed_out=timed_out,
        cancelled=cancelled,
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
        duration_seconds=time.monotonic() - start_monotonic,
    )


def _start_reader(stream: IO[str] | None, chunks: list[str]) -> threading.Thread:
    def _drain() -> None:
        if stream is None:
            return
        with stream:
            for line in stream:
                chunks.append(line)

    thread = threading.Thread(target=_drain, daemon=True)
    thread.start()
    return thread


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: int) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(0, grace_seconds))
    except subprocess.TimeoutExpired:
        logger.warning("Agent pid=%s ignored SIGTERM, killing", process.pid)
        try:
            process.kill()
        except OSError:
            return
        process.wait()
