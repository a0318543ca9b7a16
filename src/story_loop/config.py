"""Runtime configuration for the story loop."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from story_loop.orchestrator.errors import ConfigurationError

DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = ("Bash", "Read", "Edit", "Write", "Glob", "Grep")
STATE_DIR_NAME = ".story-loop"


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI settings."""

    command: str = "claude"
    model: str = DEFAULT_MODEL
    max_turns: int = 50
    max_budget_usd: float = 0.0
    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    skip_permissions: bool = True
    prompt_file: Path | None = None


@dataclass(slots=True)
class LoopSettings:
    """Scheduling and retry settings for the run loop."""

    parallelism: str = "sequential"
    max_attempts: int = 10
    channel_capacity: int = 64


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    work_dir: Path = Path()
    prd_path: Path = Path("prd.json")
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)

    @property
    def state_dir(self) -> Path:
        return self.work_dir / STATE_DIR_NAME

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    @property
    def resolved_prd_path(self) -> Path:
        if self.prd_path.is_absolute():
            return self.prd_path
        return self.work_dir / self.prd_path

    @property
    def progress_path(self) -> Path:
        return self.resolved_prd_path.parent / "progress.txt"

    @classmethod
    def from_env(
        cls,
        work_dir: Path | None = None,
        prd_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            work_dir=work_dir or Path(os.getenv("STORY_LOOP_WORK_DIR", ".")),
            prd_path=prd_path or Path(os.getenv("STORY_LOOP_PRD_PATH", "prd.json")),
            agent=AgentSettings(
                command=os.getenv("STORY_LOOP_AGENT_COMMAND", "claude"),
                model=os.getenv("STORY_LOOP_MODEL", DEFAULT_MODEL),
                max_turns=_env_int("STORY_LOOP_MAX_TURNS", 50),
                max_budget_usd=_env_float("STORY_LOOP_MAX_BUDGET_USD", 0.0),
                allowed_tools=_env_csv("STORY_LOOP_ALLOWED_TOOLS", DEFAULT_ALLOWED_TOOLS),
                skip_permissions=_env_bool("STORY_LOOP_SKIP_PERMISSIONS", default=True),
                prompt_file=_env_path("STORY_LOOP_PROMPT_FILE"),
            ),
            loop=LoopSettings(
                parallelism=os.getenv("STORY_LOOP_PARALLELISM", "sequential"),
                max_attempts=_env_int("STORY_LOOP_MAX_ATTEMPTS", 10),
                channel_capacity=_env_int("STORY_LOOP_CHANNEL_CAPACITY", 64),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the run loop cannot honor."""

        if not self.agent.command.strip():
            raise ConfigurationError("STORY_LOOP_AGENT_COMMAND must not be empty.")
        try:
            shlex.split(self.agent.command)
        except ValueError as error:
            raise ConfigurationError(f"Invalid STORY_LOOP_AGENT_COMMAND: {error}") from error
        if self.agent.max_turns < 0:
            raise ConfigurationError("STORY_LOOP_MAX_TURNS must be >= 0.")
        if self.agent.max_budget_usd < 0:
            raise ConfigurationError("STORY_LOOP_MAX_BUDGET_USD must be >= 0.")
        if self.loop.max_attempts < 1:
            raise ConfigurationError("STORY_LOOP_MAX_ATTEMPTS must be >= 1.")
        if self.loop.channel_capacity < 1:
            raise ConfigurationError("STORY_LOOP_CHANNEL_CAPACITY must be >= 1.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number value for {name}: {raw!r}") from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        values.append(token)
    return tuple(values)


def _env_path(name: str) -> Path | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
