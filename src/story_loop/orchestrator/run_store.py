"""Durable run records: one JSON document per run."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from pathlib import Path
from uuid import uuid4

from story_loop.orchestrator.contracts import write_json
from story_loop.orchestrator.errors import PersistenceError
from story_loop.orchestrator.models import (
    Attempt,
    Run,
    RunStatus,
    SessionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"run-{utc_now():%Y%m%dT%H%M%SZ}-{uuid4().hex[:6]}"


class RunStore:
    """Thread-safe run repository persisted under ``runs_dir``.

    Every mutation rewrites the run's JSON document so that an external viewer
    reading the directory sees near-real-time state. Write failures raise
    :class:`PersistenceError`; the in-memory record stays updated either way.
    """

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}
        self._load_existing()

    def _load_existing(self) -> None:
        if not self.runs_dir.is_dir():
            return
        for path in sorted(self.runs_dir.glob("*.json")):
            try:
                raw = json.loads(path.read_text("utf-8"))
                run = Run.from_json(raw)
            except (OSError, ValueError, KeyError, TypeError) as error:
                logger.warning("Skipping unreadable run record %s: %s", path, error)
                continue
            self._runs[run.run_id] = run

    def path_for(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def create_run(self, *, task_spec_path: Path, branch_name: str) -> Run:
        """Register a new running record; persistence failures are logged."""

        run = Run(
            run_id=new_run_id(),
            task_spec_path=str(task_spec_path),
            branch_name=branch_name,
            started_at=utc_now(),
        )
        try:
            self.save_run(run)
        except PersistenceError as error:
            logger.warning("%s", error)
        return run

    def save_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.run_id] = run
            self._persist(run)

    def add_attempt(self, run_id: str, attempt: Attempt) -> None:
        """Append an attempt to its unit session and persist the run."""

        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise PersistenceError(f"Unknown run: {run_id}")
            session = run.session(attempt.unit_id)
            session.attempts.append(attempt)
            session.status = SessionStatus.PASSED if attempt.passed else SessionStatus.FAILED
            self._persist(run)

    def set_session_status(self, run_id: str, unit_id: str, status: SessionStatus) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise PersistenceError(f"Unknown run: {run_id}")
            run.session(unit_id).status = status
            self._persist(run)

    def finish_run(self, run_id: str, status: RunStatus) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise PersistenceError(f"Unknown run: {run_id}")
            run.status = status
            run.finished_at = utc_now()
            self._persist(run)

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self) -> list[Run]:
        """Runs ordered newest first."""

        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda run: (run.started_at, run.run_id), reverse=True)

    def attempt_counts(self, branch_name: str) -> dict[str, int]:
        """Highest recorded attempt number per unit across runs on ``branch_name``."""

        counts: Counter[str] = Counter()
        with self._lock:
            for run in self._runs.values():
                if run.branch_name != branch_name:
                    continue
                for session in run.sessions:
                    for attempt in session.attempts:
                        counts[attempt.unit_id] = max(counts[attempt.unit_id], attempt.number)
        return dict(counts)

    def _persist(self, run: Run) -> None:
        path = self.path_for(run.run_id)
        try:
            write_json(path, run.to_json())
        except OSError as error:
            raise PersistenceError(f"Cannot write run record {path}: {error}") from error
