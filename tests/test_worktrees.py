"""Tests for per-agent git worktrees."""

import threading
from pathlib import Path

import pytest

from helpers import branches, commit_file, git

from agent_fleet.core.worktrees import WorktreeError, WorktreeManager, agent_branch_name
from agent_fleet.db.models import Task
from agent_fleet.integrations.git import worktree_list


@pytest.fixture
def manager(git_repo):
    mgr = WorktreeManager(git_repo, branch_prefix="fleet")
    yield mgr
    mgr.teardown()


class TestBranchNames:
    def test_agent_branch_name(self):
        assert agent_branch_name("fleet", 3, "Add Login Page!") == "fleet/agent-3-add-login-page"


class TestWorktreeLifecycle:
    def test_create_worktree(self, manager, git_repo):
        wt = manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "main")
        assert wt.branch == "fleet/agent-1-add-login"
        assert wt.path.exists()
        assert wt.path.parent == manager.base_dir
        assert (wt.path / "README.md").exists()
        assert git(wt.path, "branch", "--show-current") == wt.branch
        assert any(Path(w.path).resolve() == wt.path.resolve() for w in worktree_list(git_repo))

    def test_primary_checkout_untouched(self, manager, git_repo):
        manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "main")
        assert git(git_repo, "branch", "--show-current") == "main"

    def test_stale_branch_is_replaced(self, manager, git_repo):
        git(git_repo, "checkout", "-b", "fleet/agent-1-add-login")
        commit_file(git_repo, "stale.txt", "old\n")
        git(git_repo, "checkout", "main")

        wt = manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "main")
        assert not (wt.path / "stale.txt").exists()
        assert git(wt.path, "rev-parse", "HEAD") == git(git_repo, "rev-parse", "main")

    def test_missing_base_branch(self, manager):
        with pytest.raises(WorktreeError, match="agent 1"):
            manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "no-such-branch")

    def test_cleanup_clean_worktree_keeps_branch(self, manager, git_repo):
        wt = manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "main")
        commit_file(wt.path, "login.txt", "login\n")
        assert manager.cleanup_agent_worktree(wt.path, wt.branch) is True
        assert not wt.path.exists()
        assert branches(git_repo) == ["fleet/agent-1-add-login"]

    def test_cleanup_preserves_dirty_worktree(self, manager):
        wt = manager.create_agent_worktree(Task(id="1", title="Add login"), 1, "main")
        (wt.path / "scratch.txt").write_text("uncommitted\n")
        assert manager.cleanup_agent_worktree(wt.path, wt.branch) is False
        assert wt.path.exists()
        assert manager.preserved == [str(wt.path)]

    def test_cleanup_missing_path(self, manager, git_repo):
        assert manager.cleanup_agent_worktree(Path(git_repo) / "gone") is True

    def test_cleanup_preserves_directory_git_cannot_read(self, manager):
        stray = manager.setup() / "agent-9"
        stray.mkdir()
        (stray / "notes.txt").write_text("keep me\n")
        assert manager.cleanup_agent_worktree(stray) is False
        assert (stray / "notes.txt").exists()
        assert manager.preserved == [str(stray)]

    def test_concurrent_creation(self, manager, git_repo):
        results, errors = [], []

        def create(n):
            try:
                results.append(manager.create_agent_worktree(Task(id=str(n), title=f"Task {n}"), n, "main"))
            except WorktreeError as e:
                errors.append(e)

        threads = [threading.Thread(target=create, args=(n,)) for n in range(1, 5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({wt.path for wt in results}) == 4
        assert len(branches(git_repo)) == 4


class TestTeardown:
    def test_teardown_removes_base(self, git_repo):
        manager = WorktreeManager(git_repo)
        manager.create_agent_worktree(Task(id="1", title="One"), 1, "main")
        manager.create_agent_worktree(Task(id="2", title="Two"), 2, "main")
        base = manager.base_dir

        report = manager.teardown()
        assert len(report.removed) == 2
        assert report.preserved == []
        assert report.base_removed
        assert not base.exists()
        assert len(worktree_list(git_repo)) == 1

    def test_teardown_is_idempotent(self, git_repo):
        manager = WorktreeManager(git_repo)
        manager.create_agent_worktree(Task(id="1", title="One"), 1, "main")
        manager.teardown()
        report = manager.teardown()
        assert report.removed == []
        assert report.base_removed

    def test_teardown_keeps_base_with_dirty_child(self, git_repo):
        manager = WorktreeManager(git_repo)
        wt = manager.create_agent_worktree(Task(id="1", title="One"), 1, "main")
        (wt.path / "scratch.txt").write_text("uncommitted\n")

        report = manager.teardown()
        assert report.preserved == [str(wt.path)]
        assert not report.base_removed
        assert manager.base_dir.exists()

    def test_teardown_without_setup(self, git_repo):
        report = WorktreeManager(git_repo).teardown()
        assert report.removed == []
        assert not report.base_removed
