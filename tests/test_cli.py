from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner
from conftest import ECHO_AGENT_COMMAND, make_prd, make_story

from story_loop import __version__
from story_loop.main import story_loop

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("story-loop CLI"),
]


def _invoke(*args: str):
    return CliRunner().invoke(story_loop, list(args), catch_exceptions=False)


def test_version_flag() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_status_lists_stories_and_problems(git_repo: Path, write_prd) -> None:
    stories = [make_story("US-1", 1, passes=True), make_story("US-2", 3)]
    write_prd(git_repo, make_prd(stories=stories))

    result = _invoke("status", "--work-dir", str(git_repo))

    assert result.exit_code == 0, result.output
    assert "Project: Demo" in result.output
    assert "Stories: 1/2 passing" in result.output
    assert "[x] US-1 (priority 1) Story US-1" in result.output
    assert "[ ] US-2 (priority 3) Story US-2" in result.output
    assert "Problems:" in result.output


def test_status_reports_missing_task_file(tmp_path: Path) -> None:
    result = CliRunner().invoke(story_loop, ["status", "--work-dir", str(tmp_path)])

    assert result.exit_code != 0
    assert "Cannot read task spec" in result.output


def test_run_dry_run_does_not_touch_the_repo(git_repo: Path, write_prd) -> None:
    stories = [make_story("US-1", 1, passes=True), make_story("US-2", 2)]
    write_prd(git_repo, make_prd(stories=stories))

    result = _invoke(
        "run",
        "--work-dir",
        str(git_repo),
        "--parallelism",
        "parallel-2",
        "--max-attempts",
        "4",
        "--dry-run",
    )

    assert result.exit_code == 0, result.output
    assert "[dry-run] Would execute with the following settings:" in result.output
    assert "Parallelism:  parallel-2" in result.output
    assert "Max attempts: 4" in result.output
    assert "US-1 [passed] Story US-1" in result.output
    assert "US-2 [pending] Story US-2" in result.output
    assert not (git_repo / ".story-loop").exists()
    assert not (git_repo / "progress.txt").exists()


def test_run_rejects_invalid_parallelism(git_repo: Path, write_prd) -> None:
    write_prd(git_repo, make_prd(stories=[make_story("US-1", 1)]))

    result = CliRunner().invoke(
        story_loop,
        ["run", "--work-dir", str(git_repo), "--parallelism", "parallel-0"],
    )

    assert result.exit_code == 1
    assert "must be >= 1" in result.output


def test_run_rejects_duplicate_ids(git_repo: Path, write_prd) -> None:
    write_prd(git_repo, make_prd(stories=[make_story("US-1", 1), make_story("US-1", 2)]))

    result = CliRunner().invoke(story_loop, ["run", "--work-dir", str(git_repo)])

    assert result.exit_code == 1
    assert "not runnable" in result.output


def test_run_then_inspect_history(git_repo: Path, write_prd) -> None:
    prd_path = write_prd(git_repo, make_prd(stories=[make_story("US-1", 1)]))

    result = _invoke("run", "--work-dir", str(git_repo), "--agent-command", ECHO_AGENT_COMMAND)

    assert result.exit_code == 0, result.output
    assert "Loaded task file: Demo (1 stories)" in result.output
    assert "[US-1] PASS (attempt 1/10)" in result.output
    assert "Summary: 1/1 stories passed" in result.output
    assert "All stories pass!" in result.output
    assert json.loads(prd_path.read_text("utf-8"))["userStories"][0]["passes"] is True

    listed = _invoke("runs", "list", "--work-dir", str(git_repo))
    assert listed.exit_code == 0
    assert "Runs: 1" in listed.output
    assert "status=passed" in listed.output

    shown = _invoke("runs", "show", "--work-dir", str(git_repo), "--events")
    assert shown.exit_code == 0
    assert "Status: passed" in shown.output
    assert "US-1 status=passed attempts=1" in shown.output
    assert "#1 passed failure_class=-" in shown.output
    assert "tool_use Write" in shown.output


def test_runs_show_handles_empty_and_unknown(tmp_path: Path) -> None:
    assert "No runs recorded." in _invoke("runs", "show", "--work-dir", str(tmp_path)).output
    missing = _invoke("runs", "show", "--work-dir", str(tmp_path), "--run-id", "run-nope")
    assert "Run not found: run-nope" in missing.output
