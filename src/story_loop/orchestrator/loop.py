"""Top-level run loop: select a batch, dispatch, merge, record, repeat."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from story_loop.config import Settings
from story_loop.orchestrator.attempts import AttemptTracker
from story_loop.orchestrator.backend.base import (
    AgentConstraints,
    AgentEvent,
    AgentExecutor,
    AgentRunRequest,
    EventKind,
)
from story_loop.orchestrator.broadcast import EventBroadcastHub
from story_loop.orchestrator.contracts import (
    TaskSpec,
    WorkUnit,
    load_task_spec,
    save_task_spec,
)
from story_loop.orchestrator.errors import (
    AgentStartError,
    AgentStreamError,
    MergeConflictError,
    PersistenceError,
    StoryLoopError,
    TaskSpecError,
    WorkspaceCreateError,
)
from story_loop.orchestrator.git import GitClient, GitCommandError
from story_loop.orchestrator.models import (
    Attempt,
    AttemptStatus,
    FailureClass,
    LoopRunSummary,
    Run,
    RunStatus,
    SessionStatus,
    utc_now,
)
from story_loop.orchestrator.planner import DependencyAnalyzer, PlannerMode, select_batch
from story_loop.orchestrator.progress import ProgressLog
from story_loop.orchestrator.prompts import AGENT_SYSTEM_PROMPT, build_story_prompt
from story_loop.orchestrator.run_store import RunStore
from story_loop.orchestrator.workspace import (
    IsolatedWorkspace,
    MergeOutcome,
    WorkspaceManager,
)

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "story-loop"
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"

EchoFn = Callable[[str], None]


@dataclass(slots=True)
class AttemptResult:
    """Outcome of one dispatched attempt before it is recorded."""

    unit: WorkUnit
    number: int
    started_at: datetime
    finished_at: datetime
    events: list[AgentEvent] = field(default_factory=list)
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    workspace: IsolatedWorkspace | None = None

    @property
    def clean(self) -> bool:
        return self.failure_class is None

    def fail(self, error: StoryLoopError, *, emit: bool = True) -> None:
        """Downgrade the attempt; the first error decides its failure class."""

        if self.failure_class is None:
            self.failure_class = failure_class_for(error)
            self.error_summary = str(error)
        if emit:
            self.events.append(AgentEvent(kind=EventKind.ERROR.value, message=str(error)))


_FAILURE_CLASSES: dict[type[StoryLoopError], FailureClass] = {
    AgentStartError: FailureClass.AGENT_START_ERROR,
    AgentStreamError: FailureClass.AGENT_STREAM_ERROR,
    WorkspaceCreateError: FailureClass.WORKSPACE_CREATE_ERROR,
    MergeConflictError: FailureClass.MERGE_CONFLICT,
}


def failure_class_for(error: StoryLoopError) -> FailureClass:
    for error_type, failure_class in _FAILURE_CLASSES.items():
        if isinstance(error, error_type):
            return failure_class
    return FailureClass.AGENT_STREAM_ERROR


def build_constraints(settings: Settings, agent_prompt: str = AGENT_SYSTEM_PROMPT) -> AgentConstraints:
    """Translate settings into per-invocation agent constraints."""

    agent = settings.agent
    return AgentConstraints(
        model=agent.model,
        max_turns=agent.max_turns,
        max_budget_usd=agent.max_budget_usd,
        allowed_tools=agent.allowed_tools,
        append_system_prompt=agent_prompt,
        extra_flags=(SKIP_PERMISSIONS_FLAG,) if agent.skip_permissions else (),
    )


def commit_message(unit: WorkUnit) -> str:
    return f"{COMMIT_PREFIX}: {unit.id} {unit.title} [passed]"


def format_event(event: AgentEvent) -> str | None:
    """Console rendering of one event; None for events not worth echoing."""

    if event.kind == EventKind.ASSISTANT.value:
        text = event.message.strip()
        return text or None
    if event.kind == EventKind.TOOL_USE.value:
        return f"[tool: {event.tool_name}]"
    if event.kind == EventKind.TOOL_RESULT.value:
        return "[tool result]"
    if event.kind == EventKind.ERROR.value:
        return f"[error] {event.message}"
    if event.kind == EventKind.INIT.value and event.session_id:
        return f"[session: {event.session_id}]"
    if event.kind == EventKind.RESULT.value:
        return "[agent finished]"
    return None


def prepare_state_dir(settings: Settings) -> None:
    """Create the state directory and keep it out of commits."""

    settings.state_dir.mkdir(parents=True, exist_ok=True)
    ignore_file = settings.state_dir / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("*\n", "utf-8")


class StoryOrchestrator:
    """Drives every eligible unit of a task file to pass or permanent skip."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        backend: AgentExecutor,
        run_store: RunStore,
        hub: EventBroadcastHub,
        git: GitClient,
        workspaces: WorkspaceManager,
        mode: PlannerMode,
        analyzer: DependencyAnalyzer | None = None,
        progress: ProgressLog | None = None,
        constraints: AgentConstraints | None = None,
        echo: EchoFn | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.run_store = run_store
        self.hub = hub
        self.git = git
        self.workspaces = workspaces
        self.mode = mode
        self.analyzer = analyzer
        self.progress = progress
        self.constraints = constraints or build_constraints(settings)
        self.echo = echo
        self.task_spec_path: Path = settings.resolved_prd_path
        self.current_run: Run | None = None
        self._unsaved_passes: set[str] = set()
        self._echo_lock = threading.Lock()

    def run(
        self,
        cancel_event: threading.Event | None = None,
        *,
        install_signal_handlers: bool = False,
    ) -> LoopRunSummary:
        """Loop until no unit is eligible or cancellation is requested.

        Only task-file read errors and configuration errors escape; every
        collaborator failure becomes a failed attempt of the unit concerned.
        """

        cancel = cancel_event or threading.Event()
        if install_signal_handlers:
            with _signal_handlers(cancel):
                return self._run(cancel)
        return self._run(cancel)

    def _run(self, cancel: threading.Event) -> LoopRunSummary:
        spec = load_task_spec(self.task_spec_path)
        prepare_state_dir(self.settings)
        if spec.branch_name:
            created = self.git.create_or_checkout_branch(spec.branch_name)
            self._say(f"{'Created' if created else 'On'} branch: {spec.branch_name}")
        self._prepare_progress(spec)

        run = self.run_store.create_run(
            task_spec_path=self.task_spec_path,
            branch_name=spec.branch_name,
        )
        self.current_run = run
        summary = LoopRunSummary(run_id=run.run_id)
        tracker = AttemptTracker(self.settings.loop.max_attempts)
        for unit_id in tracker.seed(self.run_store.attempt_counts(spec.branch_name)):
            if _is_passing(spec, unit_id):
                continue
            summary.skipped.append(unit_id)
            self._set_session_status(run.run_id, unit_id, SessionStatus.SKIPPED)
            self._say(f"[{unit_id}] Skipping: exceeded max attempts ({tracker.max_attempts})")

        try:
            while not cancel.is_set():
                batch = select_batch(
                    spec.user_stories,
                    self.mode,
                    skipped=tracker.skipped_ids(),
                    analyzer=self.analyzer,
                )
                if not batch:
                    break
                summary.batches += 1
                logger.info("Dispatching batch %s: %s", summary.batches, [unit.id for unit in batch])
                if len(batch) == 1:
                    spec = self._run_inline(batch[0], tracker, summary, cancel)
                else:
                    spec = self._run_concurrent(batch, tracker, summary, cancel)
        finally:
            summary.cancelled = cancel.is_set()
            self._finish(run, spec, summary)
        return summary

    def _prepare_progress(self, spec: TaskSpec) -> None:
        if self.progress is None:
            return
        try:
            archived = self.progress.archive_if_branch_changed(
                current_branch=spec.branch_name,
                task_spec_path=self.task_spec_path,
            )
            if archived is not None:
                self._say(f"Archived previous progress log to {archived}")
            self.progress.init_if_needed(project=spec.project, branch=spec.branch_name)
        except PersistenceError as error:
            logger.warning("%s", error)

    def _run_inline(
        self,
        unit: WorkUnit,
        tracker: AttemptTracker,
        summary: LoopRunSummary,
        cancel: threading.Event,
    ) -> TaskSpec:
        number = tracker.begin(unit.id)
        self._say(
            f"\n--- {unit.id} - {unit.title} (attempt {number}/{tracker.max_attempts}) ---",
        )
        result = self._execute(unit, number, work_dir=self.settings.work_dir, cancel=cancel)
        return self._record(result, tracker, summary)

    def _run_concurrent(
        self,
        batch: list[WorkUnit],
        tracker: AttemptTracker,
        summary: LoopRunSummary,
        cancel: threading.Event,
    ) -> TaskSpec:
        self._say(f"\n--- Concurrent batch: {', '.join(unit.id for unit in batch)} ---")
        acquired: list[IsolatedWorkspace] = []
        early: list[AttemptResult] = []
        dispatch: list[tuple[WorkUnit, int, IsolatedWorkspace]] = []
        spec: TaskSpec | None = None
        try:
            for unit in batch:
                number = tracker.begin(unit.id)
                try:
                    workspace = self.workspaces.acquire(unit.id)
                except WorkspaceCreateError as error:
                    now = utc_now()
                    result = AttemptResult(unit=unit, number=number, started_at=now, finished_at=now)
                    result.fail(error)
                    early.append(result)
                    continue
                acquired.append(workspace)
                dispatch.append((unit, number, workspace))

            completed: list[AttemptResult] = []
            if dispatch:
                with ThreadPoolExecutor(
                    max_workers=len(dispatch),
                    thread_name_prefix="story-attempt",
                ) as pool:
                    futures = [
                        pool.submit(
                            self._execute,
                            unit,
                            number,
                            work_dir=workspace.path,
                            cancel=cancel,
                            workspace=workspace,
                            prefix=f"[{unit.id}] ",
                        )
                        for unit, number, workspace in dispatch
                    ]
                    completed.extend(future.result() for future in as_completed(futures))

            for result in early:
                spec = self._record(result, tracker, summary)
            for result in completed:
                self._merge(result, summary)
                spec = self._record(result, tracker, summary)
        finally:
            for workspace in acquired:
                if not workspace.released:
                    self.workspaces.release(workspace)
        return spec if spec is not None else self._load_spec()

    def _merge(self, result: AttemptResult, summary: LoopRunSummary) -> None:
        workspace = result.workspace
        if workspace is None:
            return
        try:
            if not result.clean:
                return
            outcome = self.workspaces.merge_back(workspace, commit_message=commit_message(result.unit))
            if outcome != MergeOutcome.MERGED:
                summary.merge_conflicts += 1
                detail = self.workspaces.last_merge_output or outcome.value
                result.fail(MergeConflictError(workspace.branch, detail))
        finally:
            self.workspaces.release(workspace)

    def _execute(
        self,
        unit: WorkUnit,
        number: int,
        *,
        work_dir: Path,
        cancel: threading.Event,
        workspace: IsolatedWorkspace | None = None,
        prefix: str = "",
    ) -> AttemptResult:
        """Run one agent attempt, publishing its events; never raises collaborator errors."""

        result = AttemptResult(
            unit=unit,
            number=number,
            started_at=utc_now(),
            finished_at=utc_now(),
            workspace=workspace,
        )
        self.hub.reset(unit.id)
        if self.current_run is not None:
            self._set_session_status(self.current_run.run_id, unit.id, SessionStatus.RUNNING)

        request = AgentRunRequest(
            prompt=build_story_prompt(unit),
            work_dir=work_dir,
            constraints=self.constraints,
            cancel_event=cancel,
        )
        try:
            stream = self.backend.invoke(request)
            for event in stream:
                result.events.append(event)
                self.hub.publish(unit.id, event)
                self._echo_event(event, prefix)
                if event.is_error:
                    result.fail(AgentStreamError(event.message), emit=False)
                elif event.kind == EventKind.RESULT.value and event.payload.get("is_error"):
                    message = event.message or "agent reported an error result"
                    result.fail(AgentStreamError(message), emit=False)
        except AgentStartError as error:
            logger.warning("Agent failed to start for %s: %s", unit.id, error)
            result.fail(error)
            self.hub.publish(unit.id, result.events[-1])
            self._echo_event(result.events[-1], prefix)
        except OSError as error:
            result.fail(AgentStreamError(f"agent stream failed: {error}"))
            self.hub.publish(unit.id, result.events[-1])
        except Exception as error:  # noqa: BLE001
            logger.exception("Agent attempt for %s crashed", unit.id)
            result.fail(AgentStreamError(f"agent attempt crashed: {error}"))
            self.hub.publish(unit.id, result.events[-1])
            self._echo_event(result.events[-1], prefix)
        finally:
            self.hub.close_stream(unit.id)
            result.finished_at = utc_now()
        return result

    def _record(
        self,
        result: AttemptResult,
        tracker: AttemptTracker,
        summary: LoopRunSummary,
    ) -> TaskSpec:
        """Persist one terminal attempt and return the reloaded task spec."""

        unit = result.unit
        spec = self._load_spec()
        passed = result.clean
        summary.attempts += 1

        if passed:
            if not spec.mark_passed(unit.id):
                logger.warning("Unit %s is no longer present in %s", unit.id, self.task_spec_path)
            try:
                save_task_spec(self.task_spec_path, spec)
            except TaskSpecError as error:
                logger.warning("%s", error)
                self._unsaved_passes.add(unit.id)
            else:
                self._unsaved_passes.clear()

        if self.current_run is not None:
            attempt = Attempt(
                run_id=self.current_run.run_id,
                unit_id=unit.id,
                number=result.number,
                status=AttemptStatus.PASSED if passed else AttemptStatus.FAILED,
                started_at=result.started_at,
                finished_at=result.finished_at,
                failure_class=result.failure_class,
                error_summary=result.error_summary,
                events=list(result.events),
            )
            try:
                self.run_store.add_attempt(self.current_run.run_id, attempt)
            except PersistenceError as error:
                logger.warning("%s", error)

        if self.progress is not None:
            try:
                self.progress.append_entry(
                    unit.id,
                    passed=passed,
                    events=result.events,
                    attempt=result.number,
                )
            except PersistenceError as error:
                logger.warning("%s", error)

        attempt_label = f"attempt {result.number}/{tracker.max_attempts}"
        if passed:
            try:
                self.git.commit_all(commit_message(unit))
            except GitCommandError as error:
                logger.warning("Commit failed for %s: %s", unit.id, error)
            tracker.record_pass(unit.id)
            summary.passed += 1
            self._say(f"[{unit.id}] PASS ({attempt_label})")
            return spec

        summary.failed += 1
        self._say(f"[{unit.id}] FAIL ({attempt_label}): {result.error_summary}")
        if tracker.record_failure(unit.id):
            summary.skipped.append(unit.id)
            if self.current_run is not None:
                self._set_session_status(self.current_run.run_id, unit.id, SessionStatus.SKIPPED)
            logger.warning("Unit %s exceeded max attempts (%s)", unit.id, tracker.max_attempts)
            self._say(f"[{unit.id}] Skipping: exceeded max attempts ({tracker.max_attempts})")
        return spec

    def _finish(self, run: Run, spec: TaskSpec, summary: LoopRunSummary) -> None:
        try:
            spec = self._load_spec()
        except TaskSpecError as error:
            logger.warning("Cannot reload task spec for the final summary: %s", error)
        summary.total_units = len(spec.user_stories)
        summary.passing_units = sum(1 for unit in spec.user_stories if unit.passes)
        status = (
            RunStatus.PASSED if summary.passing_units == summary.total_units else RunStatus.FAILED
        )
        try:
            self.run_store.finish_run(run.run_id, status)
        except PersistenceError as error:
            logger.warning("%s", error)

    def _load_spec(self) -> TaskSpec:
        """Reload the task file, re-applying passes whose save failed."""

        spec = load_task_spec(self.task_spec_path)
        for unit_id in self._unsaved_passes:
            spec.mark_passed(unit_id)
        return spec

    def _set_session_status(self, run_id: str, unit_id: str, status: SessionStatus) -> None:
        try:
            self.run_store.set_session_status(run_id, unit_id, status)
        except PersistenceError as error:
            logger.warning("%s", error)

    def _echo_event(self, event: AgentEvent, prefix: str) -> None:
        line = format_event(event)
        if line is not None:
            self._say(f"{prefix}{line}")

    def _say(self, line: str) -> None:
        if self.echo is None:
            return
        with self._echo_lock:
            self.echo(line)


def _is_passing(spec: TaskSpec, unit_id: str) -> bool:
    unit = spec.find(unit_id)
    return unit is not None and unit.passes


@contextmanager
def _signal_handlers(cancel: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, cancelling in-flight attempts", name)
        cancel.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
