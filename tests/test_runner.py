"""Tests for the single-job runner."""

from unittest.mock import patch

import pytest

from helpers import FakeBackend, branches, commit_file, git

from agent_fleet.core.cancel import CancelToken
from agent_fleet.core.engines import AgentResult
from agent_fleet.core.retry import RetryPolicy
from agent_fleet.core.runner import (
    DONE,
    FAILED,
    QUEUED,
    RUNNING,
    AgentJob,
    InvalidTransition,
    JobOptions,
    run_agent_job,
)
from agent_fleet.core.worktrees import WorktreeManager
from agent_fleet.db.models import Task
from agent_fleet.integrations.github import GitHubError

NO_WAIT = JobOptions(retry_policy=RetryPolicy(max_attempts=3, base_delay=0))


@pytest.fixture
def manager(git_repo):
    mgr = WorktreeManager(git_repo)
    yield mgr
    mgr.teardown()


def make_job(workdir, title="Add login", number=1, base="main") -> AgentJob:
    return AgentJob(
        agent_number=number,
        task=Task(id=str(number), title=title),
        base_branch=base,
        log_path=workdir / f"agent-{number}.log",
    )


class TestJobStates:
    def test_initial_state(self, workdir):
        job = make_job(workdir)
        assert job.status == QUEUED
        assert not job.is_terminal

    def test_invalid_transition(self, workdir):
        job = make_job(workdir)
        with pytest.raises(InvalidTransition):
            job.transition(RUNNING)

    def test_terminal_states_are_final(self, workdir):
        job = make_job(workdir)
        job.fail("nope")
        assert job.status == FAILED
        with pytest.raises(InvalidTransition):
            job.transition(DONE)

    def test_log_tail(self, workdir):
        job = make_job(workdir)
        for i in range(30):
            job.log(f"line {i}")
        tail = job.log_tail(5)
        assert len(tail) == 5
        assert tail[-1].endswith("line 29")


class TestRunAgentJob:
    def test_success(self, manager, git_repo, workdir):
        backend = FakeBackend()
        job = run_agent_job(make_job(workdir), manager, backend, NO_WAIT)

        assert job.status == DONE
        assert job.error is None
        assert job.commit_count == 1
        assert job.attempts == 1
        assert job.input_tokens == 10
        assert job.branch_name == "fleet/agent-1-add-login"
        assert job.started_at and job.finished_at
        # Worktree is gone, the branch stays for merging
        assert not job.worktree_path.exists()
        assert branches(git_repo) == ["fleet/agent-1-add-login"]
        assert "add-login.txt" in git(git_repo, "ls-tree", "--name-only", job.branch_name)
        assert "TASK: Add login" in backend.calls[0][0]

    def test_no_commit_fails(self, manager, workdir):
        backend = FakeBackend(action=lambda prompt, cwd: None)
        job = run_agent_job(make_job(workdir), manager, backend, NO_WAIT)
        assert job.status == FAILED
        assert job.error == "No new commits created"

    def test_empty_response_exhausts_retries(self, manager, workdir):
        backend = FakeBackend(action=lambda prompt, cwd: AgentResult(success=True, response="  "))
        job = run_agent_job(make_job(workdir), manager, backend, NO_WAIT)
        assert job.status == FAILED
        assert job.attempts == 3
        assert len(backend.calls) == 3
        assert "Empty response" in job.error
        assert "after 3 attempts" in job.error

    def test_retry_then_success(self, manager, workdir):
        def flaky(prompt, cwd):
            if len(backend.calls) == 1:
                return AgentResult(success=False, error="Rate limit exceeded", input_tokens=7)
            commit_file(cwd, "feature.txt", "done\n")
            return None

        backend = FakeBackend(action=flaky)
        job = run_agent_job(make_job(workdir), manager, backend, NO_WAIT)
        assert job.status == DONE
        assert job.attempts == 2
        # Tokens from the failed attempt are still counted
        assert job.input_tokens == 17
        assert any("Attempt 1/3 failed: Rate limit exceeded" in line for line in job.log_tail(50))

    def test_stderr_tail_is_logged(self, manager, workdir):
        backend = FakeBackend(
            action=lambda prompt, cwd: AgentResult(success=False, error="crash", stderr="warn\nfatal: bad\n")
        )
        job = run_agent_job(make_job(workdir), manager, backend, JobOptions(
            retry_policy=RetryPolicy(max_attempts=1, base_delay=0),
        ))
        assert job.status == FAILED
        assert any(line.endswith("fatal: bad") for line in job.log_tail(50))

    def test_worktree_failure(self, manager, workdir):
        backend = FakeBackend()
        job = run_agent_job(make_job(workdir, base="missing"), manager, backend, NO_WAIT)
        assert job.status == FAILED
        assert "Failed to create worktree" in job.error
        assert backend.calls == []

    def test_cancelled_before_start(self, manager, workdir):
        cancel = CancelToken()
        cancel.cancel()
        backend = FakeBackend()
        job = run_agent_job(make_job(workdir), manager, backend, NO_WAIT, cancel)
        assert job.status == FAILED
        assert job.error == "cancelled"
        assert backend.calls == []

    def test_cancelled_during_backoff(self, manager, workdir):
        cancel = CancelToken()

        def fail_and_cancel(prompt, cwd):
            cancel.cancel()
            return AgentResult(success=False, error="boom")

        backend = FakeBackend(action=fail_and_cancel)
        options = JobOptions(retry_policy=RetryPolicy(max_attempts=3, base_delay=30))
        job = run_agent_job(make_job(workdir), manager, backend, options, cancel)
        assert job.status == FAILED
        assert job.error == "cancelled"
        assert len(backend.calls) == 1

    def test_dirty_worktree_is_preserved(self, manager, workdir):
        def commit_and_litter(prompt, cwd):
            commit_file(cwd, "feature.txt", "done\n")
            (cwd / "scratch.txt").write_text("left behind\n")

        job = run_agent_job(make_job(workdir), manager, FakeBackend(commit_and_litter), NO_WAIT)
        assert job.status == DONE
        assert job.worktree_path.exists()
        assert manager.preserved == [str(job.worktree_path)]
        assert job.log_tail()[-1].endswith("Worktree left in place due to uncommitted changes")


class TestPullRequests:
    @patch("agent_fleet.core.runner.create_pull_request")
    @patch("agent_fleet.core.runner.push_branch")
    def test_opens_pull_request(self, mock_push, mock_pr, manager, workdir):
        mock_pr.return_value = "https://github.com/acme/app/pull/7"
        options = JobOptions(retry_policy=RetryPolicy(base_delay=0), create_pr=True, draft_pr=True)
        job = run_agent_job(make_job(workdir), manager, FakeBackend(), options)

        assert job.status == DONE
        assert job.pr_url == "https://github.com/acme/app/pull/7"
        mock_push.assert_called_once()
        kwargs = mock_pr.call_args.kwargs
        assert kwargs["base"] == "main"
        assert kwargs["head"] == "fleet/agent-1-add-login"
        assert kwargs["draft"] is True

    @patch("agent_fleet.core.runner.create_pull_request")
    @patch("agent_fleet.core.runner.push_branch")
    def test_pull_request_failure_keeps_job_done(self, mock_push, mock_pr, manager, workdir):
        mock_pr.side_effect = GitHubError("gh failed")
        options = JobOptions(retry_policy=RetryPolicy(base_delay=0), create_pr=True)
        job = run_agent_job(make_job(workdir), manager, FakeBackend(), options)
        assert job.status == DONE
        assert job.pr_url is None
        assert any("Pull request creation failed" in line for line in job.log_tail(50))
