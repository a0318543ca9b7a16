"""Per-unit git worktrees for concurrent attempts.

A workspace is a (path, branch) pair derived deterministically from the unit
id. Acquisition refuses to reuse leftovers from a crashed run so stale state
is surfaced instead of overwritten. Merge-back into the integration branch is
serialized through one lock; attempts themselves run in parallel.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from story_loop.orchestrator.errors import WorkspaceCreateError
from story_loop.orchestrator.git import GitClient, GitCommandError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "story-loop/"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class MergeOutcome(str, Enum):
    MERGED = "merged"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(slots=True)
class IsolatedWorkspace:
    """Filesystem checkout plus branch exclusively owned by one attempt."""

    unit_id: str
    path: Path
    branch: str
    released: bool = field(default=False, compare=False)


def workspace_slug(unit_id: str) -> str:
    slug = _UNSAFE_CHARS.sub("-", unit_id).strip("-.")
    return slug or "unit"


class WorkspaceManager:
    """Acquire, merge back and release isolated workspaces."""

    def __init__(self, git: GitClient, root: Path) -> None:
        self.git = git
        self.root = root
        self._merge_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active: dict[str, IsolatedWorkspace] = {}
        self.last_merge_output = ""

    def path_for(self, unit_id: str) -> Path:
        return self.root / workspace_slug(unit_id)

    def branch_for(self, unit_id: str) -> str:
        return f"{BRANCH_PREFIX}{workspace_slug(unit_id)}"

    def acquire(self, unit_id: str) -> IsolatedWorkspace:
        """Create a worktree on a fresh branch from the integration HEAD."""

        slug = workspace_slug(unit_id)
        path = self.root / slug
        branch = f"{BRANCH_PREFIX}{slug}"
        with self._state_lock:
            holder = self._active.get(slug)
            if holder is not None and holder.unit_id == unit_id:
                raise WorkspaceCreateError(f"Workspace for {unit_id} is already in use")
            if holder is not None:
                raise WorkspaceCreateError(
                    f"Workspace {slug} for {unit_id} collides with active unit {holder.unit_id}",
                )
            if path.exists():
                raise WorkspaceCreateError(
                    f"Workspace path {path} already exists; a previous run may have crashed",
                )
            if self.git.branch_exists(branch):
                raise WorkspaceCreateError(
                    f"Branch {branch} already exists; a previous run may have crashed",
                )
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self.git.worktree_add(path, branch)
            except (OSError, GitCommandError) as error:
                raise WorkspaceCreateError(f"Cannot create workspace for {unit_id}: {error}") from error
            workspace = IsolatedWorkspace(unit_id=unit_id, path=path, branch=branch)
            self._active[slug] = workspace
        logger.info("Acquired workspace %s on %s", path, branch)
        return workspace

    def merge_back(self, workspace: IsolatedWorkspace, *, commit_message: str) -> MergeOutcome:
        """Merge the workspace branch into the integration checkout.

        Pending changes in the worktree are committed first. A conflicting merge
        is aborted so the integration checkout is left as it was.
        """

        with self._merge_lock:
            try:
                self.git.commit_all(commit_message, cwd=workspace.path)
            except GitCommandError as error:
                self.last_merge_output = error.output
                logger.warning("Cannot commit workspace %s: %s", workspace.path, error)
                return MergeOutcome.FAILED
            try:
                self.git.merge(workspace.branch, message=commit_message)
            except GitCommandError as error:
                self.last_merge_output = error.output
                logger.warning("Merge of %s failed, aborting: %s", workspace.branch, error.output)
                try:
                    self.git.abort_merge()
                except GitCommandError as abort_error:
                    logger.warning("Merge abort for %s failed: %s", workspace.branch, abort_error)
                return MergeOutcome.CONFLICT
        logger.info("Merged %s", workspace.branch)
        return MergeOutcome.MERGED

    def release(self, workspace: IsolatedWorkspace) -> bool:
        """Remove worktree and branch; return False if already released.

        Failures are logged, never raised, so release is safe on every exit path.
        """

        with self._state_lock:
            if workspace.released:
                return False
            workspace.released = True
            self._active.pop(workspace_slug(workspace.unit_id), None)

        try:
            self.git.worktree_remove(workspace.path)
        except GitCommandError as error:
            logger.warning("Cannot remove worktree %s: %s", workspace.path, error)
        try:
            self.git.delete_branch(workspace.branch)
        except GitCommandError as error:
            logger.warning("Cannot delete branch %s: %s", workspace.branch, error)
        logger.info("Released workspace %s", workspace.path)
        return True

    @contextmanager
    def isolated(self, unit_id: str) -> Iterator[IsolatedWorkspace]:
        workspace = self.acquire(unit_id)
        try:
            yield workspace
        finally:
            self.release(workspace)
