"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_dispatch.jobs.repository import JobRepository

ECHO_AGENT_MODULE = "agent_dispatch.supervisor.backend.echo_agent"


def _echo_agent_command(*flags: str) -> str:
    parts = [shlex.quote(sys.executable), "-m", ECHO_AGENT_MODULE, "-p", "{prompt}", *flags]
    return " ".join(parts)


@pytest.fixture()
def echo_command() -> Callable[..., str]:
    """Command template factory for the local echo agent."""

    return _echo_agent_command


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in (
        "AGENT_DISPATCH_DB_PATH",
        "AGENT_DISPATCH_AGENT_COMMAND",
        "AGENT_DISPATCH_RESUME_ARGS",
        "AGENT_DISPATCH_TASK_TIMEOUT_SECONDS",
        "AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS",
        "AGENT_DISPATCH_STALE_ACTIVE_SECONDS",
        "AGENT_DISPATCH_POLL_INTERVAL_SECONDS",
        "AGENT_DISPATCH_JOB_RETENTION_DAYS",
        "AGENT_DISPATCH_WORKDIR",
        "AGENT_DISPATCH_MAX_SPAWN_RETRIES",
        "AGENT_DISPATCH_ENRICHMENT_ENABLED",
        "AGENT_DISPATCH_ENRICHMENT_SOURCE",
        "AGENT_DISPATCH_ENRICHMENT_HISTORY_LIMIT",
        "AGENT_DISPATCH_CONTACTS_PATH",
        "AGENT_DISPATCH_ASSISTANT_NAME",
        "AGENT_DISPATCH_OWNER_NAME",
        "AGENT_DISPATCH_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
