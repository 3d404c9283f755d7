from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import allure
import pytest

from agent_dispatch.supervisor.backend import AgentRunRequest, BackendRunError, CliAgentBackend
from agent_dispatch.supervisor.backend.cli_backend import TIMEOUT_EXIT_CODE, _build_run_args

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Process Control"),
]


def test_build_run_args_quotes_prompt_as_single_argument() -> None:
    argv = _build_run_args(
        command_template="claude -p {prompt} --output-format json",
        prompt="it's a \"quoted\" prompt; rm -rf /",
    )

    assert argv == ["claude", "-p", "it's a \"quoted\" prompt; rm -rf /", "--output-format", "json"]


def test_build_run_args_appends_resume_directive() -> None:
    argv = _build_run_args(
        command_template="claude -p {prompt}",
        prompt="continue",
        resume_template="--resume {session_id}",
        resume_session_id="sess 1",
    )

    assert argv == ["claude", "-p", "continue", "--resume", "sess 1"]


def test_build_run_args_skips_resume_without_session_id() -> None:
    argv = _build_run_args(
        command_template="claude -p {prompt}",
        prompt="fresh",
        resume_template="--resume {session_id}",
        resume_session_id=None,
    )

    assert argv == ["claude", "-p", "fresh"]


def test_build_run_args_keeps_braces_inside_prompt() -> None:
    argv = _build_run_args(command_template="agent {prompt}", prompt='{"json": {prompt}}')

    assert argv == ["agent", '{"json": {prompt}}']


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("claude -p hello", "must include {prompt}"),
        ("claude {model} {prompt}", "Unsupported command template placeholder"),
        ("claude 'unterminated {prompt}", "Invalid agent command template"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error_info:
        _build_run_args(command_template=template, prompt="x")

    assert error_info.value.transient is False


def test_run_captures_stdout_and_disables_color(echo_command) -> None:
    result = CliAgentBackend().run(
        AgentRunRequest(
            prompt="hello world",
            command_template=echo_command(),
            timeout_seconds=30,
        ),
    )

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.cancelled is False
    envelope = json.loads(result.stdout)
    assert envelope["result"] == "hello world"
    assert envelope["resumed"] is False
    assert envelope["force_color"] == "0"


def test_run_passes_resume_session(echo_command) -> None:
    result = CliAgentBackend().run(
        AgentRunRequest(
            prompt="again",
            command_template=echo_command(),
            resume_template="--resume {session_id}",
            resume_session_id="sess-77",
            timeout_seconds=30,
        ),
    )

    envelope = json.loads(result.stdout)
    assert envelope["session_id"] == "sess-77"
    assert envelope["resumed"] is True


def test_run_reports_non_zero_exit_and_stderr(echo_command) -> None:
    result = CliAgentBackend().run(
        AgentRunRequest(
            prompt="boom",
            command_template=echo_command("--exit-code", "3"),
            timeout_seconds=30,
        ),
    )

    assert result.exit_code == 3
    assert "failed on purpose: boom" in result.stderr


def test_run_uses_workdir(echo_command, tmp_path: Path) -> None:
    result = CliAgentBackend().run(
        AgentRunRequest(
            prompt="cwd",
            command_template=echo_command(),
            timeout_seconds=30,
            workdir=tmp_path,
        ),
    )

    assert result.exit_code == 0


def test_run_times_out_and_terminates(echo_command) -> None:
    started = time.monotonic()
    result = CliAgentBackend(poll_interval_seconds=0.05).run(
        AgentRunRequest(
            prompt="slow",
            command_template=echo_command("--sleep", "30"),
            timeout_seconds=1,
            graceful_shutdown_seconds=2,
        ),
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - started < 10


def test_run_force_kills_process_ignoring_sigterm(echo_command) -> None:
    started = time.monotonic()
    result = CliAgentBackend(poll_interval_seconds=0.05).run(
        AgentRunRequest(
            prompt="stubborn",
            command_template=echo_command("--ignore-sigterm", "--sleep", "30"),
            timeout_seconds=1,
            graceful_shutdown_seconds=1,
        ),
    )

    assert result.timed_out is True
    assert time.monotonic() - started < 10


def test_run_stops_when_cancel_event_is_set(echo_command) -> None:
    cancel_event = threading.Event()
    timer = threading.Timer(0.5, cancel_event.set)
    timer.start()
    try:
        result = CliAgentBackend(poll_interval_seconds=0.05).run(
            AgentRunRequest(
                prompt="cancel me",
                command_template=echo_command("--sleep", "30"),
                timeout_seconds=60,
                graceful_shutdown_seconds=2,
                cancel_event=cancel_event,
            ),
        )
    finally:
        timer.cancel()

    assert result.cancelled is True
    assert result.timed_out is False
    assert result.duration_seconds < 10


def test_run_missing_command_is_not_transient() -> None:
    with pytest.raises(BackendRunError, match="Agent command not found") as error_info:
        CliAgentBackend().run(
            AgentRunRequest(
                prompt="x",
                command_template="definitely-not-an-agent-binary-4242 -p {prompt}",
                timeout_seconds=5,
            ),
        )

    assert error_info.value.transient is False


def test_run_rejects_prompt_with_nul_byte(echo_command) -> None:
    with pytest.raises(BackendRunError, match="Agent failed to start") as error_info:
        CliAgentBackend().run(
            AgentRunRequest(
                prompt="hello\x00world",
                command_template=echo_command(),
                timeout_seconds=5,
            ),
        )

    assert error_info.value.transient is False
