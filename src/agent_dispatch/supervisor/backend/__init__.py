"""Agent process backends."""

from agent_dispatch.supervisor.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from agent_dispatch.supervisor.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
