"""Thin synchronous wrapper over the ``git`` CLI."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from story_loop.orchestrator.errors import StoryLoopError

logger = logging.getLogger(__name__)


class GitCommandError(StoryLoopError):
    """A git invocation exited non-zero or could not be started."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str) -> None:
        command = " ".join(argv)
        super().__init__(f"{command} failed with code {returncode}: {output}")
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output


class GitClient:
    """Git operations against one repository; every failure raises."""

    def __init__(self, repo_dir: Path, *, git_binary: str = "git") -> None:
        self.repo_dir = repo_dir
        self.git_binary = git_binary

    def _run(self, *args: str, cwd: Path | None = None) -> str:
        argv = [self.git_binary, *args]
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=cwd or self.repo_dir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as error:
            raise GitCommandError(argv, -1, str(error)) from error
        output = (completed.stdout + completed.stderr).strip()
        if completed.returncode != 0:
            raise GitCommandError(argv, completed.returncode, output)
        return completed.stdout.strip()

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD")

    def branch_exists(self, name: str) -> bool:
        try:
            self._run("show-ref", "--verify", "--quiet", f"refs/heads/{name}")
        except GitCommandError:
            return False
        return True

    def create_or_checkout_branch(self, name: str) -> bool:
        """Check out ``name``, creating it from HEAD first; return True if created."""

        if self.branch_exists(name):
            self._run("checkout", name)
            return False
        self._run("checkout", "-b", name)
        return True

    def worktree_add(self, path: Path, branch: str) -> None:
        """Create ``path`` as a worktree on new ``branch`` from the current HEAD."""

        self._run("worktree", "add", "-b", branch, str(path), "HEAD")

    def worktree_remove(self, path: Path) -> None:
        self._run("worktree", "remove", "--force", str(path))
        self._run("worktree", "prune")

    def commit_all(self, message: str, *, cwd: Path | None = None) -> bool:
        """Stage everything and commit; return False when there was nothing to commit."""

        self._run("add", "-A", cwd=cwd)
        staged = self._run("diff", "--cached", "--name-only", cwd=cwd)
        if not staged:
            logger.debug("Nothing to commit in %s", cwd or self.repo_dir)
            return False
        self._run("commit", "-m", message, cwd=cwd)
        return True

    def merge(self, branch: str, *, message: str | None = None) -> None:
        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args.extend(["-m", message])
        self._run(*args, branch)

    def abort_merge(self) -> None:
        self._run("merge", "--abort")

    def delete_branch(self, name: str) -> None:
        self._run("branch", "-D", name)
