"""Controllers for story-loop CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from story_loop.config import Settings
from story_loop.orchestrator.backend import CliAgentBackend
from story_loop.orchestrator.broadcast import EventBroadcastHub
from story_loop.orchestrator.contracts import TaskSpec, load_task_spec, validate_task_spec
from story_loop.orchestrator.errors import TaskSpecError
from story_loop.orchestrator.git import GitClient
from story_loop.orchestrator.loop import StoryOrchestrator, build_constraints
from story_loop.orchestrator.models import LoopRunSummary, Run
from story_loop.orchestrator.planner import (
    CliDependencyAnalyzer,
    PlannerKind,
    PlannerMode,
    parse_mode,
)
from story_loop.orchestrator.progress import ProgressLog
from story_loop.orchestrator.prompts import load_agent_prompt
from story_loop.orchestrator.run_store import RunStore
from story_loop.orchestrator.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the run loop; ``None`` fields fall back to the environment."""

    work_dir: Path | None
    prd_path: Path | None
    parallelism: str | None
    max_attempts: int | None
    model: str | None
    max_turns: int | None
    max_budget_usd: float | None
    agent_command: str | None
    dry_run: bool = False
    echo: Callable[[str], None] | None = None
    cancel_event: threading.Event | None = None


@dataclass(slots=True)
class StatusCommand:
    work_dir: Path | None
    prd_path: Path | None


@dataclass(slots=True)
class RunsListCommand:
    work_dir: Path | None
    limit: int


@dataclass(slots=True)
class RunsShowCommand:
    work_dir: Path | None
    run_id: str | None
    show_events: bool


class StoryLoopCliController:
    """Builds the orchestrator from settings and renders command output."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings_for_run(command)
        settings.validate()
        mode = parse_mode(settings.loop.parallelism)
        spec = load_task_spec(settings.resolved_prd_path)
        _check_runnable(spec)

        if command.dry_run:
            return _dry_run_lines(settings, spec, mode)

        orchestrator = build_orchestrator(settings, mode=mode, echo=command.echo)
        if command.echo is not None:
            command.echo(f"Loaded task file: {spec.project} ({len(spec.user_stories)} stories)")
        summary = orchestrator.run(
            command.cancel_event,
            install_signal_handlers=command.cancel_event is None,
        )
        return _summary_lines(summary)

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(work_dir=command.work_dir, prd_path=command.prd_path)
        spec = load_task_spec(settings.resolved_prd_path)
        passing = sum(1 for unit in spec.user_stories if unit.passes)
        lines = [
            f"Project: {spec.project}",
            f"Branch: {spec.branch_name}",
            f"Stories: {passing}/{len(spec.user_stories)} passing",
        ]
        for unit in sorted(spec.user_stories, key=lambda item: (item.priority, item.id)):
            marker = "x" if unit.passes else " "
            lines.append(f"  [{marker}] {unit.id} (priority {unit.priority}) {unit.title}")
        problems = validate_task_spec(spec)
        if problems:
            lines.append("Problems:")
            lines.extend(f"  - {problem}" for problem in problems)
        return lines

    def list_runs(self, command: RunsListCommand) -> list[str]:
        settings = Settings.from_env(work_dir=command.work_dir)
        runs = RunStore(settings.runs_dir).list_runs()[: command.limit]
        lines = [f"Runs: {len(runs)}"]
        for run in runs:
            attempts = sum(len(session.attempts) for session in run.sessions)
            finished = run.finished_at.isoformat() if run.finished_at else "-"
            lines.append(
                f"  {run.run_id} status={run.status.value} branch={run.branch_name or '-'} "
                f"attempts={attempts} started_at={run.started_at.isoformat()} "
                f"finished_at={finished}",
            )
        return lines

    def show_run(self, command: RunsShowCommand) -> list[str]:
        settings = Settings.from_env(work_dir=command.work_dir)
        store = RunStore(settings.runs_dir)
        run: Run | None
        if command.run_id is None:
            runs = store.list_runs()
            run = runs[0] if runs else None
            if run is None:
                return ["No runs recorded."]
        else:
            run = store.get_run(command.run_id)
            if run is None:
                return [f"Run not found: {command.run_id}"]

        lines = [
            f"Run: {run.run_id}",
            f"Status: {run.status.value}",
            f"Branch: {run.branch_name or '-'}",
            f"Task file: {run.task_spec_path}",
            f"Started: {run.started_at.isoformat()}",
            f"Finished: {run.finished_at.isoformat() if run.finished_at else '-'}",
            f"Sessions: {len(run.sessions)}",
        ]
        for session in run.sessions:
            lines.append(
                f"  {session.unit_id} status={session.status.value} "
                f"attempts={len(session.attempts)}",
            )
            for attempt in session.attempts:
                lines.append(
                    f"    #{attempt.number} {attempt.status.value} "
                    f"failure_class={attempt.failure_class.value if attempt.failure_class else '-'} "
                    f"events={len(attempt.events)} error={attempt.error_summary or '-'}",
                )
                if command.show_events:
                    for event in attempt.events:
                        detail = event.message or event.tool_name or event.session_id
                        lines.append(f"      {event.kind} {detail}".rstrip())
        return lines


def build_orchestrator(
    settings: Settings,
    *,
    mode: PlannerMode,
    echo: Callable[[str], None] | None = None,
) -> StoryOrchestrator:
    """Wire collaborators for one run from settings."""

    backend = CliAgentBackend(settings.agent.command)
    constraints = build_constraints(settings, load_agent_prompt(settings.agent.prompt_file))
    git = GitClient(settings.work_dir)
    analyzer = None
    if mode.kind == PlannerKind.AUTO:
        analyzer = CliDependencyAnalyzer(
            runner=backend,
            constraints=build_constraints(settings, ""),
            work_dir=settings.work_dir,
        )
    return StoryOrchestrator(
        settings=settings,
        backend=backend,
        run_store=RunStore(settings.runs_dir),
        hub=EventBroadcastHub(settings.loop.channel_capacity),
        git=git,
        workspaces=WorkspaceManager(git, settings.worktrees_dir),
        mode=mode,
        analyzer=analyzer,
        progress=ProgressLog(settings.progress_path),
        constraints=constraints,
        echo=echo,
    )


def _settings_for_run(command: RunCommand) -> Settings:
    settings = Settings.from_env(work_dir=command.work_dir, prd_path=command.prd_path)
    if command.parallelism is not None:
        settings.loop.parallelism = command.parallelism
    if command.max_attempts is not None:
        settings.loop.max_attempts = command.max_attempts
    if command.model is not None:
        settings.agent.model = command.model
    if command.max_turns is not None:
        settings.agent.max_turns = command.max_turns
    if command.max_budget_usd is not None:
        settings.agent.max_budget_usd = command.max_budget_usd
    if command.agent_command is not None:
        settings.agent.command = command.agent_command
    return settings


def _check_runnable(spec: TaskSpec) -> None:
    """Reject id problems; priority gaps only warrant a warning."""

    problems = validate_task_spec(spec)
    id_problems = [problem for problem in problems if "ID" in problem]
    if id_problems:
        raise TaskSpecError("Task file is not runnable: " + "; ".join(id_problems))
    for problem in problems:
        logger.warning("Task file: %s", problem)


def _dry_run_lines(settings: Settings, spec: TaskSpec, mode: PlannerMode) -> list[str]:
    agent = settings.agent
    lines = [
        f"Loaded task file: {spec.project} ({len(spec.user_stories)} stories)",
        "",
        "[dry-run] Would execute with the following settings:",
        f"  Branch:       {spec.branch_name}",
        f"  Agent:        {agent.command}",
        f"  Model:        {agent.model}",
        f"  Max turns:    {agent.max_turns}",
    ]
    if agent.max_budget_usd > 0:
        lines.append(f"  Max budget:   ${agent.max_budget_usd:.2f}")
    lines.extend(
        [
            f"  Parallelism:  {mode}",
            f"  Max attempts: {settings.loop.max_attempts}",
            "",
            "[dry-run] Stories to execute:",
        ],
    )
    for unit in sorted(spec.user_stories, key=lambda item: (item.priority, item.id)):
        state = "passed" if unit.passes else "pending"
        lines.append(f"  {unit.id} [{state}] {unit.title}")
    return lines


def _summary_lines(summary: LoopRunSummary) -> list[str]:
    lines = [
        "",
        f"Run: {summary.run_id}",
        "Loop summary: "
        f"batches={summary.batches} attempts={summary.attempts} passed={summary.passed} "
        f"failed={summary.failed} merge_conflicts={summary.merge_conflicts}",
        f"Summary: {summary.passing_units}/{summary.total_units} stories passed",
    ]
    if summary.skipped:
        lines.append(f"Skipped stories: {', '.join(summary.skipped)}")
    if summary.cancelled:
        lines.append("Run cancelled.")
    elif summary.passing_units == summary.total_units:
        lines.append("All stories pass!")
    return lines
