"""Human-readable ``progress.txt`` log kept next to the task file."""

from __future__ import annotations

import logging
import shutil
from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from story_loop.orchestrator.backend.base import AgentEvent, EventKind
from story_loop.orchestrator.errors import PersistenceError

logger = logging.getLogger(__name__)

HEADER_TITLE = "# Story Loop Progress Log"
BRANCH_PREFIX = "Branch: "
HEADER_END = "---"
ARCHIVE_DIR_NAME = "archive"


class ProgressLog:
    """Append-only attempt log with archiving when the target branch changes."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def init_if_needed(self, *, project: str, branch: str) -> bool:
        """Write the header if the file does not exist yet."""

        if self.path.exists():
            return False
        header = (
            f"{HEADER_TITLE}\n"
            f"Project: {project}\n"
            f"{BRANCH_PREFIX}{branch}\n"
            f"Started: {datetime.now().astimezone():%a, %d %b %Y %H:%M:%S %Z}\n"
            f"\n{HEADER_END}\n"
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(header, "utf-8")
        except OSError as error:
            raise PersistenceError(f"Cannot initialize {self.path}: {error}") from error
        return True

    def append_entry(
        self,
        unit_id: str,
        *,
        passed: bool,
        events: Iterable[AgentEvent],
        attempt: int | None = None,
    ) -> None:
        status = "PASS" if passed else "FAIL"
        label = f"{unit_id} [{status}]" if attempt is None else f"{unit_id} #{attempt} [{status}]"
        entry = (
            f"\n## {datetime.now():%Y-%m-%d %H:%M:%S} - {label}\n"
            f"{summarize_events(events)}{HEADER_END}\n"
        )
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry)
        except OSError as error:
            raise PersistenceError(f"Cannot append to {self.path}: {error}") from error

    def recorded_branch(self) -> str | None:
        """Branch named in the header, or None when absent or unreadable."""

        try:
            lines = self.path.read_text("utf-8").splitlines()
        except OSError:
            return None
        for line in lines:
            if line.startswith(BRANCH_PREFIX):
                return line[len(BRANCH_PREFIX) :].strip()
            if line.startswith(HEADER_END):
                break
        return None

    def archive_if_branch_changed(self, *, current_branch: str, task_spec_path: Path) -> Path | None:
        """Move the log (and copy the task file) aside when it belongs to another branch.

        Returns the archive directory when archiving happened.
        """

        if not self.path.exists():
            return None
        previous = self.recorded_branch()
        if previous is None or previous == current_branch:
            return None

        feature = previous.rsplit("/", 1)[-1] or "previous"
        archive_dir = self.path.parent / ARCHIVE_DIR_NAME / f"{datetime.now():%Y-%m-%d}-{feature}"
        try:
            archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(self.path), archive_dir / self.path.name)
        except OSError as error:
            raise PersistenceError(f"Cannot archive {self.path}: {error}") from error

        if task_spec_path.exists():
            try:
                shutil.copy2(task_spec_path, archive_dir / task_spec_path.name)
            except OSError as error:
                logger.warning("Cannot snapshot %s into archive: %s", task_spec_path, error)
        logger.info("Archived progress log of branch %s into %s", previous, archive_dir)
        return archive_dir


def summarize_events(events: Iterable[AgentEvent]) -> str:
    """Bullet summary: error messages, then tool usage counts."""

    lines: list[str] = []
    tools: Counter[str] = Counter()
    for event in events:
        if event.kind == EventKind.TOOL_USE.value and event.tool_name:
            tools[event.tool_name] += 1
        elif event.kind == EventKind.ERROR.value:
            lines.append(f"- Error: {event.message}\n")
    if tools:
        usage = ", ".join(f"{name}({count})" for name, count in sorted(tools.items()))
        lines.append(f"- Tools used: {usage}\n")
    return "".join(lines)
