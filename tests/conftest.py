"""Shared test fixtures."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

ECHO_AGENT_COMMAND = f"{sys.executable} -m story_loop.orchestrator.backend.echo_agent"

_ENV_VARS = (
    "STORY_LOOP_WORK_DIR",
    "STORY_LOOP_PRD_PATH",
    "STORY_LOOP_AGENT_COMMAND",
    "STORY_LOOP_MODEL",
    "STORY_LOOP_MAX_TURNS",
    "STORY_LOOP_MAX_BUDGET_USD",
    "STORY_LOOP_ALLOWED_TOOLS",
    "STORY_LOOP_PARALLELISM",
    "STORY_LOOP_MAX_ATTEMPTS",
    "STORY_LOOP_CHANNEL_CAPACITY",
    "STORY_LOOP_SKIP_PERMISSIONS",
    "STORY_LOOP_PROMPT_FILE",
    "STORY_LOOP_ECHO_FILE",
    "STORY_LOOP_ECHO_FAIL",
    "STORY_LOOP_ECHO_SLEEP",
    "STORY_LOOP_ECHO_BATCHES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from the developer's STORY_LOOP_* environment."""

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Story Loop Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Story Loop Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout.strip()


def make_prd(
    *,
    stories: list[dict[str, object]],
    branch_name: str = "story-loop/demo",
    project: str = "Demo",
) -> dict[str, object]:
    return {
        "project": project,
        "branchName": branch_name,
        "description": "Demo project",
        "userStories": stories,
    }


def make_story(story_id: str, priority: int, *, passes: bool = False) -> dict[str, object]:
    return {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": f"Implement {story_id}",
        "acceptanceCriteria": [f"{story_id} works", "Typecheck passes"],
        "priority": priority,
        "passes": passes,
        "notes": "",
    }


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Fresh repository with one commit on ``main``."""

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "--quiet")
    (repo / "README.md").write_text("demo\n", "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", "initial")
    git(repo, "branch", "-M", "main")
    return repo


@pytest.fixture()
def write_prd():
    """Write a prd.json into a repo and commit it."""

    def _write(repo: Path, payload: dict[str, object], *, commit: bool = True) -> Path:
        path = repo / "prd.json"
        path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")
        if commit:
            git(repo, "add", "prd.json")
            git(repo, "commit", "--quiet", "-m", "add prd")
        return path

    return _write
