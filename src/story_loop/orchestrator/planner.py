"""Batch selection for the run loop.

Three modes are supported:

- ``sequential``: the single highest-priority eligible unit.
- ``parallel-N``: up to ``N`` highest-priority eligible units.
- ``auto``: an external dependency analysis proposes ordered batches of
  mutually independent units; the first batch that still holds an eligible
  unit is returned. Any failure of the analysis falls back to ``sequential``.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from story_loop.orchestrator.backend.base import AgentConstraints, JsonRunner
from story_loop.orchestrator.contracts import WorkUnit
from story_loop.orchestrator.errors import ConfigurationError
from story_loop.orchestrator.prompts import build_dependency_prompt

logger = logging.getLogger(__name__)

BATCH_SCHEMA = """{
  "type": "object",
  "required": ["batches"],
  "properties": {
    "batches": {
      "type": "array",
      "description": "Array of batches. Each batch is an array of story IDs that can run concurrently. Batches must be executed in order.",
      "items": {
        "type": "array",
        "items": { "type": "string" }
      }
    }
  }
}"""

_PARALLEL_PREFIX = "parallel-"


class PlannerKind(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    AUTO = "auto"


@dataclass(frozen=True, slots=True)
class PlannerMode:
    """Parsed parallelism mode."""

    kind: PlannerKind
    concurrency: int = 1

    def __str__(self) -> str:
        if self.kind == PlannerKind.PARALLEL:
            return f"{_PARALLEL_PREFIX}{self.concurrency}"
        return self.kind.value


SEQUENTIAL = PlannerMode(kind=PlannerKind.SEQUENTIAL)
AUTO = PlannerMode(kind=PlannerKind.AUTO)


class DependencyAnalyzer(Protocol):
    """External request/response call that proposes ordered batches."""

    def propose_batches(self, units: list[WorkUnit]) -> object:
        """Return a payload shaped like ``[["US-1", "US-2"], ["US-3"]]``."""


def parse_mode(value: str) -> PlannerMode:
    """Parse a mode string, raising :class:`ConfigurationError` when invalid."""

    normalized = value.strip().lower()
    if normalized == PlannerKind.SEQUENTIAL.value:
        return SEQUENTIAL
    if normalized == PlannerKind.AUTO.value:
        return AUTO
    if normalized.startswith(_PARALLEL_PREFIX):
        raw_count = normalized[len(_PARALLEL_PREFIX) :]
        try:
            count = int(raw_count)
        except ValueError as error:
            raise ConfigurationError(f"Invalid parallel mode {value!r}: {error}") from error
        return parallel(count)
    raise ConfigurationError(
        f"Unknown planner mode: {value!r}. Expected sequential, parallel-N, or auto.",
    )


def parallel(count: int) -> PlannerMode:
    """Bounded-concurrency mode; ``count`` must be >= 1."""

    if count < 1:
        raise ConfigurationError(f"Parallel count must be >= 1, got {count}")
    return PlannerMode(kind=PlannerKind.PARALLEL, concurrency=count)


def eligible_units(units: Iterable[WorkUnit], skipped: Collection[str] = ()) -> list[WorkUnit]:
    """Non-passing, non-skipped units ordered by priority then id."""

    return sorted(
        (unit for unit in units if not unit.passes and unit.id not in skipped),
        key=lambda unit: (unit.priority, unit.id),
    )


def select_batch(
    units: Iterable[WorkUnit],
    mode: PlannerMode,
    *,
    skipped: Collection[str] = (),
    analyzer: DependencyAnalyzer | None = None,
) -> list[WorkUnit]:
    """Return the next batch to dispatch; empty when nothing is eligible."""

    eligible = eligible_units(units, skipped)
    if not eligible:
        return []

    if mode.kind == PlannerKind.SEQUENTIAL:
        return eligible[:1]
    if mode.kind == PlannerKind.PARALLEL:
        if mode.concurrency < 1:
            raise ConfigurationError(f"Parallel count must be >= 1, got {mode.concurrency}")
        return eligible[: mode.concurrency]
    return _select_auto_batch(eligible, analyzer)


def _select_auto_batch(
    eligible: list[WorkUnit],
    analyzer: DependencyAnalyzer | None,
) -> list[WorkUnit]:
    if analyzer is None:
        logger.warning("Auto mode has no dependency analyzer, falling back to sequential")
        return eligible[:1]

    try:
        proposed = analyzer.propose_batches(eligible)
    except Exception as error:  # noqa: BLE001
        logger.warning("Dependency analysis failed, falling back to sequential: %s", error)
        return eligible[:1]

    batches = _coerce_batches(proposed)
    if batches is None:
        logger.warning("Dependency analysis returned malformed batches, falling back to sequential")
        return eligible[:1]

    by_id = {unit.id: unit for unit in eligible}
    for batch in batches:
        selected: list[WorkUnit] = []
        for unit_id in batch:
            unit = by_id.get(unit_id)
            if unit is not None and unit not in selected:
                selected.append(unit)
        if selected:
            return selected

    logger.info("Dependency batches hold no eligible units, falling back to sequential")
    return eligible[:1]


def _coerce_batches(proposed: object) -> list[list[str]] | None:
    if isinstance(proposed, dict):
        proposed = proposed.get("batches")
    if not isinstance(proposed, list):
        return None
    batches: list[list[str]] = []
    for batch in proposed:
        if not isinstance(batch, list) or not all(isinstance(item, str) for item in batch):
            return None
        batches.append(batch)
    return batches


class CliDependencyAnalyzer:
    """Dependency analysis backed by a schema-constrained agent call."""

    def __init__(
        self,
        *,
        runner: JsonRunner,
        constraints: AgentConstraints,
        work_dir: Path | None = None,
    ) -> None:
        self.runner = runner
        self.constraints = constraints
        self.work_dir = work_dir

    def propose_batches(self, units: list[WorkUnit]) -> object:
        return self.runner.run_json(
            prompt=build_dependency_prompt(units),
            json_schema=BATCH_SCHEMA,
            constraints=self.constraints,
            work_dir=self.work_dir,
        )
