"""Error taxonomy for the story orchestrator."""

from __future__ import annotations


class StoryLoopError(RuntimeError):
    """Base class for orchestrator errors."""


class ConfigurationError(StoryLoopError):
    """Invalid mode string, non-positive limits, or other fatal settings."""


class TaskSpecError(StoryLoopError):
    """Task specification could not be read, parsed, or written."""


class AgentStartError(StoryLoopError):
    """Agent executor process failed to launch."""


class AgentStreamError(StoryLoopError):
    """Agent emitted an error event mid-stream."""


class WorkspaceCreateError(StoryLoopError):
    """Isolated worktree or branch could not be created."""


class MergeConflictError(StoryLoopError):
    """Merging an isolated branch back into the integration branch conflicted."""

    def __init__(self, branch: str, output: str) -> None:
        super().__init__(f"Merge of {branch} conflicted: {output}")
        self.branch = branch
        self.output = output


class PersistenceError(StoryLoopError):
    """Run record or progress log write failed."""
