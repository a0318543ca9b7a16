"""Subprocess-based backend runner for the agent CLI."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
from collections import deque
from collections.abc import Iterator
from pathlib import Path
from typing import IO, Any

from story_loop.orchestrator.backend.base import (
    AgentConstraints,
    AgentEvent,
    AgentRunRequest,
    EventKind,
)
from story_loop.orchestrator.backend.stream import parse_stream_line
from story_loop.orchestrator.errors import AgentStartError

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Run the agent CLI as a child process and stream its events."""

    def __init__(self, command: str = "claude", *, cancel_poll_seconds: float = 0.1) -> None:
        self.command = command
        self.cancel_poll_seconds = cancel_poll_seconds

    def invoke(self, request: AgentRunRequest) -> Iterator[AgentEvent]:
        """Start the agent; raise :class:`AgentStartError` if it cannot launch."""

        run_args = [
            *_command_head(self.command),
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            *build_common_args(request.constraints),
        ]
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.work_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise AgentStartError(f"Agent command not found: {run_args[0]}") from error
        except (OSError, ValueError) as error:
            raise AgentStartError(f"Agent failed to start: {error}") from error

        logger.debug("Agent started pid=%s cwd=%s", process.pid, request.work_dir)
        return self._stream_events(process, request.cancel_event)

    def run_json(
        self,
        *,
        prompt: str,
        json_schema: str,
        constraints: AgentConstraints,
        work_dir: Path | None = None,
    ) -> Any:
        """Run one schema-constrained prompt and return the parsed result."""

        run_args = [
            *_command_head(self.command),
            "-p",
            prompt,
            "--output-format",
            "json",
        ]
        if json_schema:
            run_args.extend(["--json-schema", json_schema])
        run_args.extend(build_common_args(constraints))

        try:
            completed = subprocess.run(  # noqa: S603
                run_args,
                cwd=work_dir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Agent failed to start: {error}", transient=True) from error

        if completed.returncode != 0:
            raise BackendRunError(
                f"Agent JSON call exited with code {completed.returncode}: "
                f"{completed.stderr.strip()}",
                transient=False,
            )
        return parse_json_envelope(completed.stdout)

    def _stream_events(
        self,
        process: subprocess.Popen[str],
        cancel_event: threading.Event | None,
    ) -> Iterator[AgentEvent]:
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        stderr_thread = threading.Thread(
            target=_drain_stderr,
            args=(process.stderr, stderr_tail),
            daemon=True,
            name=f"agent-stderr-{process.pid}",
        )
        stderr_thread.start()

        finished = threading.Event()
        cancelled = threading.Event()
        watcher: threading.Thread | None = None
        if cancel_event is not None:
            watcher = threading.Thread(
                target=self._watch_cancel,
                args=(process, cancel_event, finished, cancelled),
                daemon=True,
                name=f"agent-cancel-{process.pid}",
            )
            watcher.start()

        sent_init = False
        try:
            if process.stdout is None:
                raise RuntimeError("Agent stdout pipe is not available.")
            for raw_line in process.stdout:
                line = raw_line.strip()
                if not line:
                    continue
                for event in parse_stream_line(line):
                    if not sent_init and event.session_id:
                        sent_init = True
                        yield AgentEvent(kind=EventKind.INIT.value, session_id=event.session_id)
                    yield event

            returncode = process.wait()
            stderr_thread.join(timeout=2)
            if cancelled.is_set():
                yield AgentEvent(kind=EventKind.ERROR.value, message="agent cancelled")
            elif returncode != 0:
                detail = " | ".join(stderr_tail)
                message = f"agent process exited with code {returncode}"
                if detail:
                    message = f"{message}: {detail}"
                yield AgentEvent(kind=EventKind.ERROR.value, message=message)
        finally:
            finished.set()
            if process.poll() is None:
                _terminate_process(process)
            if watcher is not None:
                watcher.join(timeout=2)

    def _watch_cancel(
        self,
        process: subprocess.Popen[str],
        cancel_event: threading.Event,
        finished: threading.Event,
        cancelled: threading.Event,
    ) -> None:
        while not finished.is_set():
            if cancel_event.wait(timeout=self.cancel_poll_seconds):
                if process.poll() is None:
                    cancelled.set()
                    logger.info("Cancellation requested, killing agent pid=%s", process.pid)
                    _kill_process(process)
                return


def build_common_args(constraints: AgentConstraints) -> list[str]:
    """Render model, limits and tool allow-list into CLI flags."""

    args: list[str] = []
    if constraints.model:
        args.extend(["--model", constraints.model])
    if constraints.max_turns > 0:
        args.extend(["--max-turns", str(constraints.max_turns)])
    if constraints.max_budget_usd > 0:
        args.extend(["--max-budget", f"{constraints.max_budget_usd:g}"])
    if constraints.append_system_prompt:
        args.extend(["--append-system-prompt", constraints.append_system_prompt])
    for tool in constraints.allowed_tools:
        args.extend(["--allowedTools", tool])
    args.extend(constraints.extra_flags)
    return args


def parse_json_envelope(output: str) -> Any:
    """Extract the ``result`` field from ``--output-format json`` output."""

    stripped = output.strip()
    if not stripped:
        raise BackendRunError("Agent JSON call produced empty output.", transient=False)
    try:
        envelope = json.loads(stripped)
    except ValueError as error:
        raise BackendRunError(
            f"Agent JSON call output is not valid JSON: {stripped[:200]}",
            transient=False,
        ) from error

    if not isinstance(envelope, dict):
        return envelope
    if "structured_output" in envelope:
        return envelope["structured_output"]
    if "result" not in envelope:
        return envelope

    result = envelope["result"]
    if isinstance(result, str):
        try:
            return json.loads(result)
        except ValueError:
            return result
    return result


def _command_head(command: str) -> list[str]:
    try:
        argv = shlex.split(command)
    except ValueError as error:
        raise AgentStartError(f"Agent command {command!r} cannot be parsed: {error}") from error
    if not argv:
        raise AgentStartError("Agent command is empty.")
    return argv


def _drain_stderr(stream: IO[str] | None, tail: deque[str]) -> None:
    if stream is None:
        return
    for line in stream:
        stripped = line.strip()
        if stripped:
            tail.append(stripped)


def _kill_process(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
