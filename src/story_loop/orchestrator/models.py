"""Domain models for runs, unit sessions and attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from story_loop.orchestrator.backend.base import AgentEvent


class AttemptStatus(str, Enum):
    """Terminal outcome of one attempt."""

    PASSED = "passed"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """Per-unit status within a run."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Aggregate run status."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized reasons an attempt was recorded as failed."""

    AGENT_START_ERROR = "agent_start_error"
    AGENT_STREAM_ERROR = "agent_stream_error"
    WORKSPACE_CREATE_ERROR = "workspace_create_error"
    MERGE_CONFLICT = "merge_conflict"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class Attempt:
    """One immutable, completed execution of the agent against a unit."""

    run_id: str
    unit_id: str
    number: int
    status: AttemptStatus
    started_at: datetime
    finished_at: datetime
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    events: list[AgentEvent] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == AttemptStatus.PASSED

    def to_json(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "unitId": self.unit_id,
            "number": self.number,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "failureClass": self.failure_class.value if self.failure_class else None,
            "errorSummary": self.error_summary,
            "events": [event.to_json() for event in self.events],
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> Attempt:
        failure_class = raw.get("failureClass")
        return cls(
            run_id=str(raw["runId"]),
            unit_id=str(raw["unitId"]),
            number=int(raw["number"]),
            status=AttemptStatus(raw["status"]),
            started_at=from_iso(raw["startedAt"]),
            finished_at=from_iso(raw["finishedAt"]),
            failure_class=FailureClass(failure_class) if failure_class else None,
            error_summary=raw.get("errorSummary"),
            events=[AgentEvent.from_json(item) for item in raw.get("events", [])],
        )


@dataclass(slots=True)
class UnitSession:
    """Attempt history of one unit within a run."""

    unit_id: str
    status: SessionStatus = SessionStatus.PENDING
    attempts: list[Attempt] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "unitId": self.unit_id,
            "status": self.status.value,
            "attempts": [attempt.to_json() for attempt in self.attempts],
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> UnitSession:
        return cls(
            unit_id=str(raw["unitId"]),
            status=SessionStatus(raw.get("status", SessionStatus.PENDING.value)),
            attempts=[Attempt.from_json(item) for item in raw.get("attempts", [])],
        )


@dataclass(slots=True)
class Run:
    """Top-level record of one orchestrator invocation."""

    run_id: str
    task_spec_path: str
    branch_name: str
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    finished_at: datetime | None = None
    sessions: list[UnitSession] = field(default_factory=list)

    def session(self, unit_id: str) -> UnitSession:
        """Return the session for a unit, creating it on first use."""

        for session in self.sessions:
            if session.unit_id == unit_id:
                return session
        session = UnitSession(unit_id=unit_id)
        self.sessions.append(session)
        return session

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.run_id,
            "taskSpecPath": self.task_spec_path,
            "branchName": self.branch_name,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "sessions": [session.to_json() for session in self.sessions],
        }

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> Run:
        finished_at = raw.get("finishedAt")
        return cls(
            run_id=str(raw["id"]),
            task_spec_path=str(raw.get("taskSpecPath", "")),
            branch_name=str(raw.get("branchName", "")),
            started_at=from_iso(raw["startedAt"]),
            finished_at=from_iso(finished_at) if finished_at else None,
            status=RunStatus(raw.get("status", RunStatus.RUNNING.value)),
            sessions=[UnitSession.from_json(item) for item in raw.get("sessions", [])],
        )


@dataclass(slots=True)
class LoopRunSummary:
    """Aggregate loop counters for CLI reporting."""

    run_id: str = ""
    batches: int = 0
    attempts: int = 0
    passed: int = 0
    failed: int = 0
    merge_conflicts: int = 0
    skipped: list[str] = field(default_factory=list)
    cancelled: bool = False
    total_units: int = 0
    passing_units: int = 0
