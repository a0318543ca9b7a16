"""File-based task specification contract (``prd.json``)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from story_loop.orchestrator.errors import TaskSpecError

_STORY_KEYS = frozenset(
    {"id", "title", "description", "acceptanceCriteria", "priority", "passes", "notes"},
)
_SPEC_KEYS = frozenset({"project", "branchName", "description", "userStories"})


@dataclass(slots=True)
class WorkUnit:
    """One user story the agent loop drives to a passing state."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 0
    passes: bool = False
    notes: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class TaskSpec:
    """Top-level task specification document."""

    project: str
    branch_name: str
    description: str = ""
    user_stories: list[WorkUnit] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def find(self, unit_id: str) -> WorkUnit | None:
        for unit in self.user_stories:
            if unit.id == unit_id:
                return unit
        return None

    def mark_passed(self, unit_id: str) -> bool:
        """Flip the pass flag for one unit; return False if the id is unknown."""

        unit = self.find(unit_id)
        if unit is None:
            return False
        unit.passes = True
        return True

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "project": self.project,
            "branchName": self.branch_name,
            "description": self.description,
            "userStories": [unit.to_json() for unit in self.user_stories],
        }
        payload.update(self.extra)
        return payload


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload with two-space indent and trailing newline."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")


def load_task_spec(path: Path) -> TaskSpec:
    """Read and parse a task specification file."""

    try:
        raw = load_json(path)
    except (OSError, ValueError, TypeError) as error:
        raise TaskSpecError(f"Cannot read task spec {path}: {error}") from error
    try:
        return parse_task_spec(raw)
    except (ValueError, TypeError) as error:
        raise TaskSpecError(f"Invalid task spec {path}: {error}") from error


def save_task_spec(path: Path, spec: TaskSpec) -> None:
    """Write a task specification back to disk."""

    try:
        write_json(path, spec.to_json())
    except OSError as error:
        raise TaskSpecError(f"Cannot write task spec {path}: {error}") from error


def parse_task_spec(raw: dict[str, Any]) -> TaskSpec:
    """Deserialize a task specification payload."""

    stories_raw = raw.get("userStories", [])
    if not isinstance(stories_raw, list):
        raise TypeError("userStories must be an array")
    return TaskSpec(
        project=_str_field(raw, "project"),
        branch_name=_str_field(raw, "branchName"),
        description=_str_field(raw, "description"),
        user_stories=[_parse_unit(item, index) for index, item in enumerate(stories_raw)],
        extra={key: value for key, value in raw.items() if key not in _SPEC_KEYS},
    )


def validate_task_spec(spec: TaskSpec) -> list[str]:
    """Return consistency problems: empty or duplicate ids, non-sequential priorities."""

    problems: list[str] = []
    seen: set[str] = set()
    for unit in spec.user_stories:
        if not unit.id:
            problems.append(f"story with priority {unit.priority} has empty ID")
            continue
        if unit.id in seen:
            problems.append(f"duplicate story ID: {unit.id}")
        seen.add(unit.id)

    ordered = sorted(spec.user_stories, key=lambda unit: unit.priority)
    for expected, unit in enumerate(ordered, start=1):
        if unit.priority != expected:
            problems.append(
                f"non-sequential priority: story {unit.id} has priority "
                f"{unit.priority}, expected {expected}",
            )
            break
    return problems


def _parse_unit(raw: object, index: int) -> WorkUnit:
    if not isinstance(raw, dict):
        raise TypeError(f"userStories[{index}] must be an object")
    criteria = raw.get("acceptanceCriteria", [])
    if not isinstance(criteria, list) or not all(isinstance(item, str) for item in criteria):
        raise TypeError(f"userStories[{index}].acceptanceCriteria must be an array of strings")
    priority = raw.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TypeError(f"userStories[{index}].priority must be an integer")
    passes = raw.get("passes", False)
    if not isinstance(passes, bool):
        raise TypeError(f"userStories[{index}].passes must be a boolean")
    return WorkUnit(
        id=_str_field(raw, "id"),
        title=_str_field(raw, "title"),
        description=_str_field(raw, "description"),
        acceptance_criteria=list(criteria),
        priority=priority,
        passes=passes,
        notes=_str_field(raw, "notes"),
        extra={key: value for key, value in raw.items() if key not in _STORY_KEYS},
    )


def _str_field(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value
