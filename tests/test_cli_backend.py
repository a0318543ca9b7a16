from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import allure
import pytest
from conftest import ECHO_AGENT_COMMAND

from story_loop.orchestrator.backend import (
    AgentConstraints,
    AgentRunRequest,
    BackendRunError,
    CliAgentBackend,
    EventKind,
)
from story_loop.orchestrator.backend.cli_backend import build_common_args, parse_json_envelope
from story_loop.orchestrator.contracts import WorkUnit
from story_loop.orchestrator.errors import AgentStartError
from story_loop.orchestrator.prompts import build_story_prompt

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Backend"),
]


def _request(tmp_path: Path, story_id: str = "US-001", **kwargs) -> AgentRunRequest:
    unit = WorkUnit(id=story_id, title="Do it", acceptance_criteria=["works"])
    return AgentRunRequest(prompt=build_story_prompt(unit), work_dir=tmp_path, **kwargs)


def test_build_common_args_renders_constraints() -> None:
    args = build_common_args(
        AgentConstraints(
            model="claude-x",
            max_turns=5,
            max_budget_usd=1.5,
            allowed_tools=("Read", "Bash"),
            append_system_prompt="be brief",
            extra_flags=("--dangerously-skip-permissions",),
        ),
    )

    assert args == [
        "--model",
        "claude-x",
        "--max-turns",
        "5",
        "--max-budget",
        "1.5",
        "--append-system-prompt",
        "be brief",
        "--allowedTools",
        "Read",
        "--allowedTools",
        "Bash",
        "--dangerously-skip-permissions",
    ]


def test_build_common_args_skips_unset_limits() -> None:
    assert build_common_args(AgentConstraints()) == []


def test_invoke_streams_echo_agent_events(tmp_path: Path) -> None:
    backend = CliAgentBackend(ECHO_AGENT_COMMAND)

    events = list(backend.invoke(_request(tmp_path)))

    kinds = [event.kind for event in events]
    assert kinds[0] == EventKind.INIT.value
    assert EventKind.TOOL_USE.value in kinds
    assert kinds[-1] == EventKind.RESULT.value
    assert not any(event.is_error for event in events)
    assert (tmp_path / "echo_US-001.txt").read_text("utf-8") == "US-001\n"


def test_invoke_reports_non_zero_exit_as_terminal_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORY_LOOP_ECHO_FAIL", "US-009")
    backend = CliAgentBackend(ECHO_AGENT_COMMAND)

    events = list(backend.invoke(_request(tmp_path, "US-009")))

    assert events[-1].is_error
    assert "exited with code 1" in events[-1].message
    assert "refused story US-009" in events[-1].message


def test_invoke_raises_start_error_for_missing_binary(tmp_path: Path) -> None:
    backend = CliAgentBackend("definitely-not-an-agent-binary-xyz")

    with pytest.raises(AgentStartError, match="not found"):
        backend.invoke(_request(tmp_path))


def test_invoke_raises_start_error_for_unparsable_command(tmp_path: Path) -> None:
    backend = CliAgentBackend('python "unterminated')

    with pytest.raises(AgentStartError, match="cannot be parsed"):
        backend.invoke(_request(tmp_path))


def test_invoke_raises_start_error_for_null_byte_prompt(tmp_path: Path) -> None:
    backend = CliAgentBackend(ECHO_AGENT_COMMAND)
    request = AgentRunRequest(prompt="bad \x00 prompt", work_dir=tmp_path)

    with pytest.raises(AgentStartError, match="failed to start"):
        backend.invoke(request)


def test_cancel_event_kills_running_agent(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORY_LOOP_ECHO_SLEEP", "30")
    cancel = threading.Event()
    backend = CliAgentBackend(ECHO_AGENT_COMMAND, cancel_poll_seconds=0.05)

    timer = threading.Timer(0.5, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        events = list(backend.invoke(_request(tmp_path, cancel_event=cancel)))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 20
    assert events[-1].is_error
    assert events[-1].message == "agent cancelled"
    assert not (tmp_path / "echo_US-001.txt").exists()


def test_run_json_returns_parsed_result(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STORY_LOOP_ECHO_BATCHES", '{"batches": [["US-2", "US-3"], ["US-4"]]}')
    backend = CliAgentBackend(ECHO_AGENT_COMMAND)

    payload = backend.run_json(
        prompt="group these",
        json_schema="{}",
        constraints=AgentConstraints(),
        work_dir=tmp_path,
    )

    assert payload == {"batches": [["US-2", "US-3"], ["US-4"]]}


def test_run_json_raises_on_non_zero_exit(tmp_path: Path) -> None:
    backend = CliAgentBackend(f"{sys.executable} -c 'import sys; sys.exit(3)'")

    with pytest.raises(BackendRunError, match="exited with code 3") as error:
        backend.run_json(prompt="x", json_schema="", constraints=AgentConstraints(), work_dir=tmp_path)

    assert error.value.transient is False


def test_parse_json_envelope_prefers_structured_output() -> None:
    assert parse_json_envelope('{"structured_output": {"batches": []}, "result": "x"}') == {
        "batches": [],
    }
    assert parse_json_envelope('{"result": "plain text"}') == "plain text"


def test_parse_json_envelope_rejects_garbage() -> None:
    with pytest.raises(BackendRunError, match="not valid JSON"):
        parse_json_envelope("<html>")
