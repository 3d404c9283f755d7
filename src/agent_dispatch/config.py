"""Runtime configuration for the job queue and supervisor."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude -p {prompt} --output-format json --dangerously-skip-permissions"
DEFAULT_RESUME_ARGS = "--resume {session_id}"


@dataclass(slots=True)
class SupervisorSettings:
    """Agent process execution settings."""

    agent_command: str = DEFAULT_AGENT_COMMAND
    resume_args: str = DEFAULT_RESUME_ARGS
    task_timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 5
    stale_active_seconds: int = 3_600
    poll_interval_seconds: float = 2.0
    job_retention_days: int = 7
    workdir: Path | None = None
    max_spawn_retries: int = 1


@dataclass(slots=True)
class EnrichmentSettings:
    """Conversation context injection settings."""

    enabled: bool = True
    source: str = "imessage"
    history_limit: int = 10
    contacts_path: Path | None = None
    assistant_name: str = "Assistant"
    owner_name: str = "the owner"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_dispatch.db")
    log_level: str = "WARNING"
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    enrichment: EnrichmentSettings = field(default_factory=EnrichmentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a single local worker."""

        workdir_raw = os.getenv("AGENT_DISPATCH_WORKDIR", "").strip()
        contacts_raw = os.getenv("AGENT_DISPATCH_CONTACTS_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_DISPATCH_DB_PATH", ".agent_dispatch.db")),
            log_level=os.getenv("AGENT_DISPATCH_LOG_LEVEL", "WARNING").strip().upper(),
            supervisor=SupervisorSettings(
                agent_command=os.getenv("AGENT_DISPATCH_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                resume_args=os.getenv("AGENT_DISPATCH_RESUME_ARGS", DEFAULT_RESUME_ARGS),
                task_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_TASK_TIMEOUT_SECONDS", "1800"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                stale_active_seconds=int(
                    os.getenv("AGENT_DISPATCH_STALE_ACTIVE_SECONDS", "3600"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                job_retention_days=int(os.getenv("AGENT_DISPATCH_JOB_RETENTION_DAYS", "7")),
                workdir=Path(workdir_raw) if workdir_raw else None,
                max_spawn_retries=int(os.getenv("AGENT_DISPATCH_MAX_SPAWN_RETRIES", "1")),
            ),
            enrichment=EnrichmentSettings(
                enabled=_env_bool("AGENT_DISPATCH_ENRICHMENT_ENABLED", default=True),
                source=os.getenv("AGENT_DISPATCH_ENRICHMENT_SOURCE", "imessage").strip(),
                history_limit=int(os.getenv("AGENT_DISPATCH_ENRICHMENT_HISTORY_LIMIT", "10")),
                contacts_path=Path(contacts_raw) if contacts_raw else None,
                assistant_name=os.getenv("AGENT_DISPATCH_ASSISTANT_NAME", "Assistant"),
                owner_name=os.getenv("AGENT_DISPATCH_OWNER_NAME", "the owner"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot work with."""

        supervisor = self.supervisor
        if "{prompt}" not in supervisor.agent_command:
            raise ValueError("AGENT_DISPATCH_AGENT_COMMAND must include {prompt}.")
        if supervisor.resume_args.strip() and "{session_id}" not in supervisor.resume_args:
            raise ValueError("AGENT_DISPATCH_RESUME_ARGS must include {session_id}.")
        if supervisor.task_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_TASK_TIMEOUT_SECONDS must be > 0.")
        if supervisor.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if supervisor.stale_active_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_STALE_ACTIVE_SECONDS must be > 0.")
        if supervisor.poll_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if supervisor.job_retention_days < 0:
            raise ValueError("AGENT_DISPATCH_JOB_RETENTION_DAYS must be >= 0.")
        if supervisor.max_spawn_retries < 0:
            raise ValueError("AGENT_DISPATCH_MAX_SPAWN_RETRIES must be >= 0.")
        if not self.enrichment.source:
            raise ValueError("AGENT_DISPATCH_ENRICHMENT_SOURCE cannot be empty.")
        if self.enrichment.history_limit <= 0:
            raise ValueError("AGENT_DISPATCH_ENRICHMENT_HISTORY_LIMIT must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown AGENT_DISPATCH_LOG_LEVEL: {self.log_level!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
