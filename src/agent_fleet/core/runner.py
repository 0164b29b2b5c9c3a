"""Agent job runner: drives one task through worktree setup, agent attempts and verification."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_fleet.core.cancel import CancelToken, RunCancelled
from agent_fleet.core.engines import AgentBackend, AgentResult
from agent_fleet.core.prompts import build_task_prompt
from agent_fleet.core.retry import RetryPolicy, is_retryable_error, with_retry
from agent_fleet.core.worktrees import WorktreeError, WorktreeManager
from agent_fleet.db.models import Task
from agent_fleet.integrations.git import GitError, commit_count, push_branch
from agent_fleet.integrations.github import GitHubError, create_pull_request

logger = logging.getLogger(__name__)

QUEUED = "queued"
SETTING_UP = "setting_up"
RUNNING = "running"
DONE = "done"
FAILED = "failed"

TERMINAL = {DONE, FAILED}

TRANSITIONS = {
    QUEUED: {SETTING_UP, FAILED},
    SETTING_UP: {RUNNING, FAILED},
    RUNNING: {DONE, FAILED},
    DONE: set(),
    FAILED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class AgentError(Exception):
    """A failed agent attempt. `retryable` is advisory; the retry envelope retries regardless."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class JobOptions:
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    skip_tests: bool = False
    skip_lint: bool = False
    create_pr: bool = False
    draft_pr: bool = False
    pr_base: str | None = None
    stderr_tail_lines: int = 20


@dataclass
class AgentJob:
    agent_number: int
    task: Task
    base_branch: str
    group: int = 0
    batch_number: int = 0
    status: str = QUEUED
    worktree_path: Path | None = None
    branch_name: str | None = None
    log_path: Path | None = None
    step: str | None = None
    attempts: int = 0
    commit_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    pr_url: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def transition(self, new_status: str) -> None:
        with self._lock:
            if new_status not in TRANSITIONS[self.status]:
                raise InvalidTransition(f"agent-{self.agent_number}: {self.status} -> {new_status}")
            self.status = new_status
            if new_status == SETTING_UP:
                self.started_at = datetime.now()
            elif new_status in TERMINAL:
                self.finished_at = datetime.now()

    def fail(self, reason: str) -> None:
        self.error = reason
        self.log(f"FAILED: {reason}")
        self.transition(FAILED)

    def set_step(self, step: str) -> None:
        self.step = step

    def log(self, message: str) -> None:
        if self.log_path is None:
            return
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(self.log_path, "a", encoding="utf-8") as f:
            for line in message.rstrip("\n").split("\n"):
                f.write(f"[{stamp}] {line}\n")

    def log_tail(self, lines: int = 20) -> list[str]:
        if self.log_path is None or not self.log_path.exists():
            return []
        return self.log_path.read_text(encoding="utf-8").splitlines()[-lines:]


def _invoke(backend: AgentBackend, prompt: str, cwd: Path, job: AgentJob) -> AgentResult:
    execute_streaming = getattr(backend, "execute_streaming", None)
    if execute_streaming is not None:
        return execute_streaming(prompt, cwd, on_step=job.set_step)
    return backend.execute(prompt, cwd)


def _check_result(result: AgentResult) -> None:
    if result.error:
        raise AgentError(result.error, retryable=is_retryable_error(result.error))
    if not result.response.strip():
        raise AgentError("Empty response from agent", retryable=True)
    if not result.success:
        raise AgentError("Agent reported failure")


def run_agent_job(
    job: AgentJob,
    worktrees: WorktreeManager,
    backend: AgentBackend,
    options: JobOptions | None = None,
    cancel: CancelToken | None = None,
) -> AgentJob:
    """Run one job to a terminal state. Never raises for job-local failures."""
    options = options or JobOptions()
    if cancel and cancel.cancelled:
        job.fail("cancelled")
        return job

    job.transition(SETTING_UP)
    job.log(f"Task: {job.task.title} (id {job.task.id})")
    try:
        worktree = worktrees.create_agent_worktree(job.task, job.agent_number, job.base_branch)
    except WorktreeError as e:
        job.fail(str(e))
        return job

    job.worktree_path = worktree.path
    job.branch_name = worktree.branch
    job.log(f"Worktree: {worktree.path}")
    job.log(f"Branch: {worktree.branch} (from {job.base_branch})")

    try:
        job.transition(RUNNING)
        _run_attempts(job, backend, options, cancel)
        if not job.is_terminal:
            _verify_and_publish(job, options)
    finally:
        if not worktrees.cleanup_agent_worktree(worktree.path, worktree.branch):
            job.log("Worktree left in place due to uncommitted changes")
    return job


def _run_attempts(
    job: AgentJob,
    backend: AgentBackend,
    options: JobOptions,
    cancel: CancelToken | None,
) -> None:
    prompt = build_task_prompt(job.task, skip_tests=options.skip_tests, skip_lint=options.skip_lint)
    policy = options.retry_policy

    def attempt() -> AgentResult:
        job.attempts += 1
        result = _invoke(backend, prompt, job.worktree_path, job)
        job.input_tokens += result.input_tokens
        job.output_tokens += result.output_tokens
        if result.stderr.strip():
            tail = result.stderr.strip().splitlines()[-options.stderr_tail_lines:]
            job.log("stderr:\n" + "\n".join(tail))
        _check_result(result)
        return result

    def on_retry(attempt_number: int, message: str, delay_ms: int) -> None:
        job.log(
            f"Attempt {attempt_number}/{policy.max_attempts} failed: {message}; "
            f"retrying in {delay_ms / 1000:.1f}s"
        )

    try:
        result = with_retry(attempt, policy, on_retry=on_retry, cancel=cancel)
    except RunCancelled:
        job.fail("cancelled")
        return
    except AgentError as e:
        job.fail(f"{e} (after {job.attempts} attempts)")
        return
    job.log(f"Agent finished: {result.response.strip()[:500]}")


def _verify_and_publish(job: AgentJob, options: JobOptions) -> None:
    job.commit_count = commit_count(job.worktree_path, job.base_branch)
    if job.commit_count == 0:
        job.fail("No new commits created")
        return

    job.log(f"{job.commit_count} new commit(s) on {job.branch_name}")
    job.transition(DONE)

    if options.create_pr:
        try:
            push_branch(job.worktree_path, job.branch_name)
            job.pr_url = create_pull_request(
                job.worktree_path,
                base=options.pr_base or job.base_branch,
                head=job.branch_name,
                title=job.task.title,
                body=f"Automated changes for: {job.task.title}\n\n{job.task.body}".strip(),
                draft=options.draft_pr,
            )
            job.log(f"Pull request: {job.pr_url}")
        except (GitError, GitHubError) as e:
            job.log(f"Pull request creation failed: {e}")
            logger.warning("agent-%d: pull request creation failed: %s", job.agent_number, e)
