"""CLI entrypoint for story-loop."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from story_loop import __version__
from story_loop.orchestrator.controllers import (
    RunCommand,
    RunsListCommand,
    RunsShowCommand,
    StatusCommand,
    StoryLoopCliController,
)
from story_loop.orchestrator.errors import StoryLoopError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StoryLoopCliController()
CommandT = TypeVar("CommandT")

_WORK_DIR_OPTION = click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Repository checkout the agent works in. Defaults to STORY_LOOP_WORK_DIR or `.`.",
)
_PRD_OPTION = click.option(
    "--prd",
    "prd_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to prd.json, relative to the work dir. Defaults to STORY_LOOP_PRD_PATH.",
)


@click.group()
@click.version_option(version=__version__, prog_name="story-loop")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def story_loop(verbose: bool) -> None:
    """Drive the stories of a `prd.json` to completion with a coding agent."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@story_loop.command("run")
@_WORK_DIR_OPTION
@_PRD_OPTION
@click.option(
    "--parallelism",
    default=None,
    help="Scheduling mode: `sequential`, `parallel-N`, or `auto`.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts per story before it is skipped.",
)
@click.option("--model", default=None, help="Agent model id.")
@click.option("--max-turns", type=click.IntRange(min=0), default=None, help="Agent turn limit.")
@click.option(
    "--max-budget",
    "max_budget_usd",
    type=click.FloatRange(min=0),
    default=None,
    help="Agent spend ceiling in USD per attempt.",
)
@click.option("--agent-command", default=None, help="Agent executable, for example `claude`.")
@click.option("--dry-run", is_flag=True, help="Print the plan without invoking the agent.")
def run(  # noqa: PLR0913
    work_dir: Path | None,
    prd_path: Path | None,
    parallelism: str | None,
    max_attempts: int | None,
    model: str | None,
    max_turns: int | None,
    max_budget_usd: float | None,
    agent_command: str | None,
    dry_run: bool,
) -> None:
    """Run the agent loop until every story passes or is skipped."""

    _emit_lines(
        _guarded(
            CONTROLLER.run,
            RunCommand(
                work_dir=work_dir,
                prd_path=prd_path,
                parallelism=parallelism,
                max_attempts=max_attempts,
                model=model,
                max_turns=max_turns,
                max_budget_usd=max_budget_usd,
                agent_command=agent_command,
                dry_run=dry_run,
                echo=click.echo,
            ),
        ),
    )


@story_loop.command("status")
@_WORK_DIR_OPTION
@_PRD_OPTION
def status(work_dir: Path | None, prd_path: Path | None) -> None:
    """Show story pass state and task file problems."""

    _emit_lines(_guarded(CONTROLLER.status, StatusCommand(work_dir=work_dir, prd_path=prd_path)))


@story_loop.group()
def runs() -> None:
    """Inspect persisted run history."""


@runs.command("list")
@_WORK_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def runs_list(work_dir: Path | None, limit: int) -> None:
    """List recorded runs, newest first."""

    _emit_lines(_guarded(CONTROLLER.list_runs, RunsListCommand(work_dir=work_dir, limit=limit)))


@runs.command("show")
@_WORK_DIR_OPTION
@click.option("--run-id", default=None, help="Run id; defaults to the newest run.")
@click.option("--events", "show_events", is_flag=True, help="Print every recorded event.")
def runs_show(work_dir: Path | None, run_id: str | None, show_events: bool) -> None:
    """Show one run with per-story attempt history."""

    _emit_lines(
        _guarded(
            CONTROLLER.show_run,
            RunsShowCommand(work_dir=work_dir, run_id=run_id, show_events=show_events),
        ),
    )


def _guarded(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except StoryLoopError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    story_loop()
