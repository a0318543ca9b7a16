from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from story_loop.orchestrator.backend.base import AgentEvent
from story_loop.orchestrator.errors import PersistenceError
from story_loop.orchestrator.models import (
    Attempt,
    AttemptStatus,
    FailureClass,
    RunStatus,
    SessionStatus,
    utc_now,
)
from story_loop.orchestrator.run_store import RunStore

pytestmark = [
    allure.epic("Run History"),
    allure.feature("Run Records"),
]


def _attempt(run_id: str, unit_id: str, number: int, *, passed: bool) -> Attempt:
    now = utc_now()
    return Attempt(
        run_id=run_id,
        unit_id=unit_id,
        number=number,
        status=AttemptStatus.PASSED if passed else AttemptStatus.FAILED,
        started_at=now,
        finished_at=now + timedelta(seconds=3),
        failure_class=None if passed else FailureClass.AGENT_STREAM_ERROR,
        error_summary=None if passed else "agent process exited with code 1",
        events=[AgentEvent(kind="tool_use", tool_name="Edit", tool_id="t1")],
    )


def test_every_mutation_is_persisted_as_one_json_document(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs")
    run = store.create_run(task_spec_path=Path("prd.json"), branch_name="story-loop/cart")

    store.add_attempt(run.run_id, _attempt(run.run_id, "US-1", 1, passed=False))
    on_disk = json.loads(store.path_for(run.run_id).read_text("utf-8"))
    assert on_disk["status"] == "running"
    assert on_disk["sessions"][0]["unitId"] == "US-1"
    assert on_disk["sessions"][0]["status"] == "failed"
    assert on_disk["sessions"][0]["attempts"][0]["failureClass"] == "agent_stream_error"

    store.add_attempt(run.run_id, _attempt(run.run_id, "US-1", 2, passed=True))
    store.finish_run(run.run_id, RunStatus.PASSED)
    on_disk = json.loads(store.path_for(run.run_id).read_text("utf-8"))
    assert on_disk["status"] == "passed"
    assert on_disk["finishedAt"] is not None
    assert [item["number"] for item in on_disk["sessions"][0]["attempts"]] == [1, 2]


def test_reopened_store_reads_back_full_history(tmp_path: Path) -> None:
    runs_dir = tmp_path / "runs"
    store = RunStore(runs_dir)
    run = store.create_run(task_spec_path=Path("prd.json"), branch_name="b")
    attempt = _attempt(run.run_id, "US-1", 1, passed=False)
    store.add_attempt(run.run_id, attempt)
    store.set_session_status(run.run_id, "US-1", SessionStatus.SKIPPED)

    reopened = RunStore(runs_dir).get_run(run.run_id)

    assert reopened is not None
    assert reopened.sessions[0].status == SessionStatus.SKIPPED
    assert reopened.sessions[0].attempts == [attempt]


def test_attempt_counts_are_scoped_to_branch(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs")
    first = store.create_run(task_spec_path=Path("prd.json"), branch_name="feature-a")
    store.add_attempt(first.run_id, _attempt(first.run_id, "US-1", 1, passed=False))
    store.add_attempt(first.run_id, _attempt(first.run_id, "US-1", 2, passed=False))
    second = store.create_run(task_spec_path=Path("prd.json"), branch_name="feature-a")
    store.add_attempt(second.run_id, _attempt(second.run_id, "US-1", 3, passed=False))
    other = store.create_run(task_spec_path=Path("prd.json"), branch_name="feature-b")
    store.add_attempt(other.run_id, _attempt(other.run_id, "US-2", 1, passed=True))

    assert store.attempt_counts("feature-a") == {"US-1": 3}
    assert store.attempt_counts("feature-b") == {"US-2": 1}
    assert store.attempt_counts("feature-c") == {}


def test_list_runs_newest_first(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs")
    older = store.create_run(task_spec_path=Path("prd.json"), branch_name="b")
    older.started_at -= timedelta(hours=1)
    store.save_run(older)
    newer = store.create_run(task_spec_path=Path("prd.json"), branch_name="b")

    assert [run.run_id for run in store.list_runs()] == [newer.run_id, older.run_id]


def test_unreadable_records_are_skipped(tmp_path: Path) -> None:
    runs_dir = tmp_path / "runs"
    runs_dir.mkdir()
    (runs_dir / "broken.json").write_text("{not json", "utf-8")

    assert RunStore(runs_dir).list_runs() == []


def test_write_failure_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "runs"
    blocker.write_text("a file where the directory should be", "utf-8")
    store = RunStore(blocker)

    run = store.create_run(task_spec_path=Path("prd.json"), branch_name="b")

    assert store.get_run(run.run_id) is run
    with pytest.raises(PersistenceError):
        store.finish_run(run.run_id, RunStatus.FAILED)


def test_add_attempt_to_unknown_run_raises(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs")

    with pytest.raises(PersistenceError, match="Unknown run"):
        store.add_attempt("run-missing", _attempt("run-missing", "US-1", 1, passed=True))
