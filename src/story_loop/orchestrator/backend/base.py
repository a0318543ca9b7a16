"""Backend interface for agent attempt execution."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class EventKind(str, Enum):
    """Flattened event kinds emitted by agent streams."""

    INIT = "init"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    RESULT = "result"
    SYSTEM = "system"


@dataclass(slots=True)
class AgentEvent:
    """One progress event produced by an agent attempt."""

    kind: str
    session_id: str = ""
    message: str = ""
    tool_name: str = ""
    tool_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.kind == EventKind.ERROR.value

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind}
        if self.session_id:
            data["session_id"] = self.session_id
        if self.message:
            data["message"] = self.message
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.tool_id:
            data["tool_id"] = self.tool_id
        if self.payload:
            data["payload"] = self.payload
        return data

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> AgentEvent:
        payload = raw.get("payload") or {}
        return cls(
            kind=str(raw.get("kind", "")),
            session_id=str(raw.get("session_id", "")),
            message=str(raw.get("message", "")),
            tool_name=str(raw.get("tool_name", "")),
            tool_id=str(raw.get("tool_id", "")),
            payload=payload if isinstance(payload, dict) else {},
        )


@dataclass(slots=True)
class AgentConstraints:
    """Limits and permissions passed to the agent for one invocation."""

    model: str = ""
    max_turns: int = 0
    max_budget_usd: float = 0.0
    allowed_tools: tuple[str, ...] = ()
    append_system_prompt: str = ""
    extra_flags: tuple[str, ...] = ()


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one attempt."""

    prompt: str
    work_dir: Path
    constraints: AgentConstraints = field(default_factory=AgentConstraints)
    cancel_event: threading.Event | None = None


class AgentExecutor(Protocol):
    """Protocol implemented by agent backends."""

    def invoke(self, request: AgentRunRequest) -> Iterator[AgentEvent]:
        """Start the agent and yield its events until the process exits."""


class JsonRunner(Protocol):
    """Single-shot structured request/response call to the agent."""

    def run_json(
        self,
        *,
        prompt: str,
        json_schema: str,
        constraints: AgentConstraints,
        work_dir: Path | None = None,
    ) -> Any:
        """Return the parsed ``result`` of a schema-constrained call."""
