"""Per-job git worktree lifecycle inside a run-scoped temporary base directory."""

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

from agent_fleet.core.tasks import slugify
from agent_fleet.db.models import Task
from agent_fleet.integrations.git import (
    GitError,
    create_branch,
    branch_exists,
    delete_branch,
    is_dirty,
    worktree_add,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)


class WorktreeError(Exception):
    """Raised when a job's worktree cannot be prepared."""


@dataclass
class AgentWorktree:
    path: Path
    branch: str


@dataclass
class TeardownReport:
    removed: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)
    base_removed: bool = False


def agent_branch_name(prefix: str, agent_number: int, title: str) -> str:
    return f"{prefix}/agent-{agent_number}-{slugify(title)}"


class WorktreeManager:
    """Creates one worktree per agent job and tears them down at run end.

    Git administrative commands (prune, branch, worktree add/remove) touch the
    shared repository metadata, so they run under a single lock.
    """

    def __init__(self, repo_path: str | Path, branch_prefix: str = "fleet"):
        self.repo_path = Path(repo_path)
        self.branch_prefix = branch_prefix
        self.base_dir: Path | None = None
        self.preserved: list[str] = []
        self._lock = threading.Lock()
        self._children: set[Path] = set()

    def setup(self) -> Path:
        if self.base_dir is None:
            self.base_dir = Path(tempfile.mkdtemp(prefix="fleet-worktrees-"))
            logger.debug("Worktree base: %s", self.base_dir)
        return self.base_dir

    def create_agent_worktree(self, task: Task, agent_number: int, base_branch: str) -> AgentWorktree:
        base_dir = self.setup()
        branch = agent_branch_name(self.branch_prefix, agent_number, task.title)
        path = base_dir / f"agent-{agent_number}"

        with self._lock:
            try:
                worktree_prune(self.repo_path)
                if branch_exists(self.repo_path, branch):
                    delete_branch(self.repo_path, branch, force=True)
                create_branch(self.repo_path, branch, base_branch)
                if path.exists():
                    shutil.rmtree(path)
                worktree_add(self.repo_path, path, branch, create_branch=False)
            except (GitError, OSError) as e:
                raise WorktreeError(f"Failed to create worktree for agent {agent_number}: {e}") from e
            self._children.add(path)

        logger.debug("Created worktree %s on %s from %s", path, branch, base_branch)
        return AgentWorktree(path=path, branch=branch)

    def cleanup_agent_worktree(self, path: str | Path, branch: str | None = None) -> bool:
        """Remove a job's worktree if it is clean. Returns True if it is gone.

        A dirty worktree, or one whose status git cannot read, is left in
        place and recorded. The branch is kept.
        """
        path = Path(path)
        if not path.exists():
            with self._lock:
                self._children.discard(path)
            return True

        try:
            dirty = is_dirty(path)
        except GitError as e:
            logger.warning("Could not read status of %s, preserving it: %s", path, e)
            self._preserve(path)
            return False

        if dirty:
            logger.warning("Worktree %s has uncommitted changes, preserving it", path)
            self._preserve(path)
            return False

        with self._lock:
            try:
                worktree_remove(self.repo_path, path, force=True)
            except GitError as e:
                logger.warning("Could not remove worktree %s: %s", path, e)
                shutil.rmtree(path, ignore_errors=True)
                worktree_prune(self.repo_path)
            self._children.discard(path)
        logger.debug("Removed worktree %s (branch %s kept)", path, branch)
        return True

    def _preserve(self, path: Path) -> None:
        with self._lock:
            if str(path) not in self.preserved:
                self.preserved.append(str(path))

    def teardown(self) -> TeardownReport:
        """Remove clean child worktrees and then the base when nothing is left."""
        report = TeardownReport()
        if self.base_dir is None:
            return report

        if self.base_dir.exists():
            for child in sorted(p for p in self.base_dir.iterdir() if p.is_dir()):
                if self.cleanup_agent_worktree(child):
                    report.removed.append(str(child))
                else:
                    report.preserved.append(str(child))

            if any(self.base_dir.iterdir()):
                logger.warning("Preserving worktree base %s", self.base_dir)
            else:
                self.base_dir.rmdir()
                report.base_removed = True
        else:
            report.base_removed = True

        try:
            worktree_prune(self.repo_path)
        except GitError as e:
            logger.warning("git worktree prune failed: %s", e)
        return report
