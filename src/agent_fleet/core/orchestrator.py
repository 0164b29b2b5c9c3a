"""Run orchestration: startup checks, the group barrier loop, merging and the run summary."""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from agent_fleet.config import Config
from agent_fleet.core.cancel import CancelToken
from agent_fleet.core.cleanup import CleanupReport, Finalizer
from agent_fleet.core.engines import AgentBackend, estimate_cost
from agent_fleet.core.ledger import RunLedger
from agent_fleet.core.merge import ReconcileResult, integrate_group, reconcile
from agent_fleet.core.retry import RetryPolicy
from agent_fleet.core.runner import JobOptions
from agent_fleet.core.scheduler import BatchScheduler, LoggingReporter, Reporter, RunState
from agent_fleet.core.tasks import GitHubTaskSource, TaskSource
from agent_fleet.core.worktrees import WorktreeManager
from agent_fleet.integrations.git import branch_exists, get_current_branch, is_git_repo
from agent_fleet.integrations.github import gh_available

logger = logging.getLogger(__name__)


class SetupError(Exception):
    """Raised before any work is scheduled when the environment cannot support a run."""


@dataclass
class RunSummary:
    run_id: str | None = None
    base_branch: str = ""
    done: int = 0
    failed: int = 0
    completed_before: int = 0
    completed_after: int = 0
    merged: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    unmerged: list[str] = field(default_factory=list)
    pr_urls: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    preserved_worktrees: list[str] = field(default_factory=list)
    remaining_branches: list[str] = field(default_factory=list)
    integration_branches: list[str] = field(default_factory=list)
    resume_hint: str | None = None
    merge_error: str | None = None
    interrupted: bool = False
    stopped_early: bool = False
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def cost(self) -> float:
        return estimate_cost(self.input_tokens, self.output_tokens)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cost"] = round(self.cost, 4)
        return data


def resolve_base_branch(repo_path: Path, requested: str | None) -> str:
    if requested:
        if not branch_exists(repo_path, requested):
            raise SetupError(f"Base branch does not exist: {requested}")
        return requested
    current = get_current_branch(repo_path)
    if not current:
        raise SetupError("HEAD is detached; pass --base-branch")
    return current


def check_requirements(repo_path: Path, config: Config, source: TaskSource, backend: AgentBackend) -> None:
    """Fatal setup checks. Raises SetupError."""
    if not is_git_repo(repo_path):
        raise SetupError(f"Not a git repository: {repo_path}")
    is_available = getattr(backend, "is_available", None)
    if is_available is not None and not is_available():
        command = getattr(backend, "command", backend.name)
        raise SetupError(f"{backend.name} CLI not found (expected '{command}' on PATH)")
    if (config.create_pr or isinstance(source, GitHubTaskSource)) and not gh_available():
        raise SetupError("GitHub CLI (gh) is required for pull requests and GitHub issues")
    if config.max_parallel < 1:
        raise SetupError("max parallel must be at least 1")


def _summarize(
    state: RunState,
    report: CleanupReport,
    merge_result: ReconcileResult,
    completed_before: int,
    completed_after: int,
    run_id: str | None,
) -> RunSummary:
    return RunSummary(
        run_id=run_id,
        base_branch=state.original_base,
        done=state.done_count,
        failed=state.failed_count,
        completed_before=completed_before,
        completed_after=completed_after,
        merged=merge_result.merged,
        resolved=merge_result.resolved,
        unresolved=merge_result.unresolved,
        unmerged=merge_result.unmerged,
        pr_urls=state.pr_urls,
        failed_tasks=[t.title for t in state.failed_tasks],
        preserved_worktrees=report.preserved_worktrees,
        remaining_branches=report.agent_branches,
        integration_branches=report.integration_branches,
        resume_hint=report.resume_hint,
        merge_error=merge_result.error,
        interrupted=report.interrupted,
        stopped_early=state.stopped_early,
        input_tokens=state.input_tokens,
        output_tokens=state.output_tokens,
    )


def run_tasks(
    source: TaskSource,
    backend: AgentBackend,
    config: Config,
    reporter: Reporter | None = None,
    db: sqlite3.Connection | None = None,
    cancel: CancelToken | None = None,
) -> RunSummary:
    """Execute every pending task of a source and merge the results."""
    repo = Path(config.repo_path).resolve()
    reporter = reporter or LoggingReporter()
    cancel = cancel or CancelToken()

    check_requirements(repo, config, source, backend)
    base = resolve_base_branch(repo, config.base_branch)

    state = RunState(original_base=base, current_base=base)
    worktrees = WorktreeManager(repo, config.branch_prefix)
    ledger = None
    if db is not None:
        ledger = RunLedger.start(
            db,
            repo_path=str(repo),
            engine=backend.name,
            source=source.describe(),
            base_branch=base,
            max_parallel=config.max_parallel,
        )
    run_label = ledger.run_id if ledger else datetime.now().strftime("%Y%m%d-%H%M%S")

    scheduler = BatchScheduler(
        source=source,
        worktrees=worktrees,
        backend=backend,
        log_dir=Path(config.log_dir) / run_label,
        max_parallel=config.max_parallel,
        job_options=JobOptions(
            retry_policy=RetryPolicy(
                max_attempts=config.max_retries,
                base_delay=config.retry_delay,
                max_delay=config.max_retry_delay,
            ),
            skip_tests=config.skip_tests,
            skip_lint=config.skip_lint,
            create_pr=config.create_pr,
            draft_pr=config.draft_pr,
            pr_base=base,
        ),
        poll_interval=config.poll_interval,
        log_tail_lines=config.log_tail_lines,
        max_iterations=config.max_iterations,
        reporter=reporter,
        ledger=ledger,
        cancel=cancel,
    )

    finalizer = Finalizer(repo, worktrees, state, cancel)
    finalizer.install_signal_handlers()

    completed_before = source.count_completed()
    merge_result = ReconcileResult()
    status = "failed"
    try:
        worktrees.setup()
        groups = source.get_groups() if source.supports_groups else [0]
        chaining = len(groups) > 1

        for group in groups:
            if source.supports_groups:
                tasks = source.get_tasks_in_group(group)
            else:
                tasks = source.get_all_tasks()
            if not tasks:
                continue
            if chaining:
                reporter.note(f"Group {group}: {len(tasks)} task(s) on {state.current_base}")

            keep_going = scheduler.run_group(tasks, state, group)

            if chaining and not cancel.cancelled:
                integrate_group(repo, state, group, config.branch_prefix, reporter, ledger)
            if not keep_going:
                break

        if not cancel.cancelled:
            merge_result = reconcile(
                repo, state, resolver=backend, prs_opened=config.create_pr, reporter=reporter
            )
        status = "cancelled" if cancel.cancelled else "completed"
    finally:
        report = finalizer.finalize()
        summary = _summarize(
            state,
            report,
            merge_result,
            completed_before,
            source.count_completed() if status != "failed" else completed_before,
            ledger.run_id if ledger else None,
        )
        if ledger:
            ledger.finish(
                status,
                tasks_done=summary.done,
                tasks_failed=summary.failed,
                input_tokens=summary.input_tokens,
                output_tokens=summary.output_tokens,
                summary=summary.to_dict(),
            )

    logger.info("Run finished: %d done, %d failed", summary.done, summary.failed)
    return summary
