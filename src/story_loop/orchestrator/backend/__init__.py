"""Agent backend implementations."""

from story_loop.orchestrator.backend.base import (
    AgentConstraints,
    AgentEvent,
    AgentExecutor,
    AgentRunRequest,
    EventKind,
    JsonRunner,
)
from story_loop.orchestrator.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentConstraints",
    "AgentEvent",
    "AgentExecutor",
    "AgentRunRequest",
    "BackendRunError",
    "CliAgentBackend",
    "EventKind",
    "JsonRunner",
]
