from __future__ import annotations

from pathlib import Path

import allure
import pytest

from story_loop.config import DEFAULT_ALLOWED_TOOLS, DEFAULT_MODEL, Settings
from story_loop.orchestrator.errors import ConfigurationError

pytestmark = [
    allure.epic("Run Loop"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.work_dir == Path(".")
    assert settings.prd_path == Path("prd.json")
    assert settings.agent.command == "claude"
    assert settings.agent.model == DEFAULT_MODEL
    assert settings.agent.max_turns == 50
    assert settings.agent.allowed_tools == DEFAULT_ALLOWED_TOOLS
    assert settings.agent.skip_permissions is True
    assert settings.agent.prompt_file is None
    assert settings.loop.parallelism == "sequential"
    assert settings.loop.max_attempts == 10
    assert settings.loop.channel_capacity == 64


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORY_LOOP_WORK_DIR", str(tmp_path))
    monkeypatch.setenv("STORY_LOOP_PRD_PATH", "tasks/prd.json")
    monkeypatch.setenv("STORY_LOOP_MODEL", "claude-opus")
    monkeypatch.setenv("STORY_LOOP_MAX_TURNS", "7")
    monkeypatch.setenv("STORY_LOOP_MAX_BUDGET_USD", "2.5")
    monkeypatch.setenv("STORY_LOOP_ALLOWED_TOOLS", "Read, Edit,Read,,Bash")
    monkeypatch.setenv("STORY_LOOP_PARALLELISM", "parallel-3")
    monkeypatch.setenv("STORY_LOOP_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("STORY_LOOP_SKIP_PERMISSIONS", "off")
    monkeypatch.setenv("STORY_LOOP_PROMPT_FILE", "prompt.md")

    settings = Settings.from_env()

    assert settings.work_dir == tmp_path
    assert settings.resolved_prd_path == tmp_path / "tasks" / "prd.json"
    assert settings.progress_path == tmp_path / "tasks" / "progress.txt"
    assert settings.runs_dir == tmp_path / ".story-loop" / "runs"
    assert settings.worktrees_dir == tmp_path / ".story-loop" / "worktrees"
    assert settings.agent.model == "claude-opus"
    assert settings.agent.max_turns == 7
    assert settings.agent.max_budget_usd == 2.5
    assert settings.agent.allowed_tools == ("Read", "Edit", "Bash")
    assert settings.agent.skip_permissions is False
    assert settings.agent.prompt_file == Path("prompt.md")
    assert settings.loop.parallelism == "parallel-3"
    assert settings.loop.max_attempts == 4


def test_explicit_paths_win_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORY_LOOP_WORK_DIR", "/somewhere/else")
    absolute_prd = tmp_path / "custom.json"

    settings = Settings.from_env(work_dir=tmp_path, prd_path=absolute_prd)

    assert settings.work_dir == tmp_path
    assert settings.resolved_prd_path == absolute_prd


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("STORY_LOOP_MAX_TURNS", "many"),
        ("STORY_LOOP_MAX_BUDGET_USD", "cheap"),
        ("STORY_LOOP_SKIP_PERMISSIONS", "maybe"),
    ],
)
def test_from_env_rejects_malformed_values(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env()


def test_validate_rejects_non_positive_attempts() -> None:
    settings = Settings()
    settings.loop.max_attempts = 0

    with pytest.raises(ConfigurationError, match="MAX_ATTEMPTS"):
        settings.validate()


def test_validate_rejects_empty_agent_command() -> None:
    settings = Settings()
    settings.agent.command = "  "

    with pytest.raises(ConfigurationError, match="AGENT_COMMAND"):
        settings.validate()


def test_validate_rejects_unparsable_agent_command() -> None:
    settings = Settings()
    settings.agent.command = 'claude --model "unterminated'

    with pytest.raises(ConfigurationError, match="Invalid STORY_LOOP_AGENT_COMMAND"):
        settings.validate()
