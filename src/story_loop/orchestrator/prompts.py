"""Prompt templates for story attempts and dependency analysis."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from story_loop.orchestrator.contracts import WorkUnit
from story_loop.orchestrator.errors import ConfigurationError

AGENT_SYSTEM_PROMPT = """\
You are an autonomous coding agent working through a list of user stories.

Each invocation gives you exactly one story. Work only on that story.

Execution rules:
- Read progress.txt (next to prd.json) first to learn what earlier attempts did.
- Implement the story so that every acceptance criterion holds.
- Run the project's checks (tests, type checks, linters) before finishing.
- Keep changes focused; do NOT refactor unrelated code.
- Do NOT edit the "passes" flags in prd.json; the loop owns them.
- If something blocks you, explain what and stop instead of guessing.
- The loop commits your work after a clean finish; do not commit yourself.
"""

DEPENDENCY_PROMPT_HEADER = (
    "Analyze the following user stories and group them into parallelizable batches. "
    "Stories in the same batch can be worked on concurrently "
    "(they have no dependencies on each other). "
    "Batches must be executed in order: all stories in batch 1 must complete "
    "before batch 2 starts.\n\n"
    "Return ONLY the batches as an array of arrays of story IDs.\n\n"
)


def build_story_prompt(unit: WorkUnit) -> str:
    """Render the per-attempt prompt for one story."""

    lines = [
        "Implement the following user story:",
        "",
        f"**ID:** {unit.id}",
        f"**Title:** {unit.title}",
        f"**Description:** {unit.description}",
        "",
        "**Acceptance Criteria:**",
    ]
    lines.extend(f"- {criterion}" for criterion in unit.acceptance_criteria)
    if unit.notes:
        lines.extend(["", f"**Notes:** {unit.notes}"])
    return "\n".join(lines) + "\n"


def build_dependency_prompt(units: Iterable[WorkUnit]) -> str:
    """Render the dependency-analysis request for the eligible stories."""

    body = "".join(
        f"- {unit.id} (priority {unit.priority}): {unit.title} - {unit.description}\n"
        for unit in units
    )
    return f"{DEPENDENCY_PROMPT_HEADER}Stories:\n{body}"


def load_agent_prompt(override_path: Path | None = None) -> str:
    """Return the system prompt, read from ``override_path`` when provided."""

    if override_path is None:
        return AGENT_SYSTEM_PROMPT
    try:
        return override_path.read_text("utf-8")
    except OSError as error:
        raise ConfigurationError(f"Cannot read prompt override {override_path}: {error}") from error
