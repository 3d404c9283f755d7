"""Backend interface for agent process execution."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent run."""

    prompt: str
    command_template: str
    timeout_seconds: int
    resume_template: str = ""
    resume_session_id: str | None = None
    graceful_shutdown_seconds: int = 5
    workdir: Path | None = None
    cancel_event: threading.Event | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int | None
    timed_out: bool
    cancelled: bool
    stdout: str
    stderr: str
    duration_seconds: float


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent to completion, timeout or cancellation."""
