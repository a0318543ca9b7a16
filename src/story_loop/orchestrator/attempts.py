"""Per-unit attempt counters gating permanent skips."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from story_loop.orchestrator.errors import ConfigurationError

logger = logging.getLogger(__name__)


class AttemptTracker:
    """Run-lifetime attempt accounting.

    Counters are a cache: the durable source of truth is the persisted
    attempt history, which :meth:`seed` replays on startup so numbering
    continues without gaps across restarts.
    """

    def __init__(self, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ConfigurationError(f"max attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self._attempts: dict[str, int] = {}
        self._skipped: set[str] = set()

    def seed(self, counts: Mapping[str, int]) -> list[str]:
        """Load prior attempt counts; return ids that are already exhausted."""

        exhausted: list[str] = []
        for unit_id, count in counts.items():
            if count <= 0:
                continue
            self._attempts[unit_id] = max(self._attempts.get(unit_id, 0), count)
            if self._attempts[unit_id] >= self.max_attempts and unit_id not in self._skipped:
                self._skipped.add(unit_id)
                exhausted.append(unit_id)
        return exhausted

    def begin(self, unit_id: str) -> int:
        """Increment and return the attempt number for the next dispatch."""

        number = self._attempts.get(unit_id, 0) + 1
        self._attempts[unit_id] = number
        return number

    def attempts(self, unit_id: str) -> int:
        return self._attempts.get(unit_id, 0)

    def record_pass(self, unit_id: str) -> None:
        logger.debug("Unit %s passed after %s attempt(s)", unit_id, self.attempts(unit_id))

    def record_failure(self, unit_id: str) -> bool:
        """Return True exactly once, when the failure exhausts the budget."""

        if unit_id in self._skipped:
            return False
        if self._attempts.get(unit_id, 0) >= self.max_attempts:
            self._skipped.add(unit_id)
            return True
        return False

    def is_skipped(self, unit_id: str) -> bool:
        return unit_id in self._skipped

    def skipped_ids(self) -> list[str]:
        return sorted(self._skipped)
