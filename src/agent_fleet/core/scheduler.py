"""Batch scheduling: run tasks in bounded concurrent batches and reconcile the outcomes."""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from agent_fleet.core.cancel import CancelToken
from agent_fleet.core.engines import AgentBackend, kill_active_processes
from agent_fleet.core.runner import (
    DONE,
    FAILED,
    QUEUED,
    RUNNING,
    SETTING_UP,
    AgentJob,
    JobOptions,
    run_agent_job,
)
from agent_fleet.core.tasks import TaskSource, TaskSourceError
from agent_fleet.core.worktrees import WorktreeManager
from agent_fleet.db.models import Task

if TYPE_CHECKING:
    from agent_fleet.core.ledger import RunLedger

logger = logging.getLogger(__name__)


def partition_batches(tasks: list[Task], ceiling: int) -> list[list[Task]]:
    """Split tasks into consecutive batches of at most `ceiling` tasks."""
    if ceiling < 1:
        raise ValueError("concurrency ceiling must be at least 1")
    return [tasks[i:i + ceiling] for i in range(0, len(tasks), ceiling)]


def batch_count(task_count: int, ceiling: int) -> int:
    return math.ceil(task_count / ceiling) if task_count else 0


@dataclass
class IntegrationBranch:
    name: str
    source_group: int
    merged_branches: list[str] = field(default_factory=list)


@dataclass
class RunState:
    """Everything the scheduling and merge stages share for one run."""

    original_base: str
    current_base: str
    agent_counter: int = 0
    batch_counter: int = 0
    completed_branches: list[str] = field(default_factory=list)
    completed_by_group: dict[int, list[str]] = field(default_factory=dict)
    integration_branches: list[IntegrationBranch] = field(default_factory=list)
    failed_tasks: list[Task] = field(default_factory=list)
    pr_urls: list[str] = field(default_factory=list)
    jobs: list[AgentJob] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stopped_early: bool = False

    def next_agent_number(self) -> int:
        self.agent_counter += 1
        return self.agent_counter

    @property
    def done_count(self) -> int:
        return sum(1 for job in self.jobs if job.status == DONE)

    @property
    def failed_count(self) -> int:
        return sum(1 for job in self.jobs if job.status == FAILED)


@dataclass
class BatchStatus:
    batch_number: int
    group: int
    total: int
    queued: int = 0
    setting_up: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0
    elapsed: float = 0.0
    steps: dict[int, str] = field(default_factory=dict)

    @classmethod
    def collect(cls, jobs: list[AgentJob], batch_number: int, group: int, started: float) -> "BatchStatus":
        status = cls(batch_number=batch_number, group=group, total=len(jobs))
        for job in jobs:
            if job.status == QUEUED:
                status.queued += 1
            elif job.status == SETTING_UP:
                status.setting_up += 1
            elif job.status == RUNNING:
                status.running += 1
                if job.step:
                    status.steps[job.agent_number] = job.step
            elif job.status == DONE:
                status.done += 1
            elif job.status == FAILED:
                status.failed += 1
        status.elapsed = time.monotonic() - started
        return status


class Reporter:
    """Receives run progress. The default implementation ignores everything."""

    def batch_started(self, batch_number: int, group: int, jobs: list[AgentJob]) -> None:
        pass

    def batch_progress(self, status: BatchStatus) -> None:
        pass

    def batch_finished(self, status: BatchStatus) -> None:
        pass

    def job_finished(self, job: AgentJob, log_tail: list[str]) -> None:
        pass

    def note(self, message: str) -> None:
        pass


class LoggingReporter(Reporter):
    def batch_started(self, batch_number, group, jobs):
        logger.info("Batch %d (group %d): %d agent(s)", batch_number, group, len(jobs))

    def batch_finished(self, status):
        logger.info(
            "Batch %d finished in %.0fs: %d done, %d failed",
            status.batch_number, status.elapsed, status.done, status.failed,
        )

    def job_finished(self, job, log_tail):
        if job.status == DONE:
            logger.info("agent-%d done: %s (%s)", job.agent_number, job.task.title, job.branch_name)
        else:
            logger.warning("agent-%d failed: %s: %s", job.agent_number, job.task.title, job.error)

    def note(self, message):
        logger.info(message)


class BatchScheduler:
    def __init__(
        self,
        source: TaskSource,
        worktrees: WorktreeManager,
        backend: AgentBackend,
        log_dir: Path,
        max_parallel: int = 3,
        job_options: JobOptions | None = None,
        poll_interval: float = 0.3,
        log_tail_lines: int = 20,
        max_iterations: int = 0,
        reporter: Reporter | None = None,
        ledger: "RunLedger | None" = None,
        cancel: CancelToken | None = None,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.source = source
        self.worktrees = worktrees
        self.backend = backend
        self.log_dir = Path(log_dir)
        self.max_parallel = max_parallel
        self.job_options = job_options or JobOptions()
        self.poll_interval = poll_interval
        self.log_tail_lines = log_tail_lines
        self.max_iterations = max_iterations
        self.reporter = reporter or Reporter()
        self.ledger = ledger
        self.cancel = cancel or CancelToken()

    def _iterations_left(self, state: RunState) -> int | None:
        if self.max_iterations <= 0:
            return None
        return max(0, self.max_iterations - state.agent_counter)

    def run_group(self, tasks: list[Task], state: RunState, group: int = 0) -> bool:
        """Run every batch of a group. Returns False if the run should stop."""
        for batch in partition_batches(tasks, self.max_parallel):
            if self.cancel.cancelled:
                return False
            left = self._iterations_left(state)
            if left == 0:
                state.stopped_early = True
                self.reporter.note(f"Reached max iterations ({self.max_iterations})")
                return False
            if left is not None:
                batch = batch[:left]
            self.run_batch(batch, state, group)
        return not self.cancel.cancelled

    def run_batch(self, tasks: list[Task], state: RunState, group: int = 0) -> list[AgentJob]:
        state.batch_counter += 1
        batch_number = state.batch_counter
        self.log_dir.mkdir(parents=True, exist_ok=True)

        jobs = []
        for task in tasks:
            number = state.next_agent_number()
            jobs.append(
                AgentJob(
                    agent_number=number,
                    task=task,
                    base_branch=state.current_base,
                    group=group,
                    batch_number=batch_number,
                    log_path=self.log_dir / f"agent-{number}.log",
                )
            )
        state.jobs.extend(jobs)
        self.reporter.batch_started(batch_number, group, jobs)

        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="fleet-agent") as pool:
            futures = {
                pool.submit(
                    run_agent_job, job, self.worktrees, self.backend, self.job_options, self.cancel
                ): job
                for job in jobs
            }
            pending = set(futures)
            while pending:
                _, pending = wait(pending, timeout=self.poll_interval)
                if self.cancel.cancelled:
                    # Agents started after the interrupt still need killing
                    kill_active_processes()
                self.reporter.batch_progress(BatchStatus.collect(jobs, batch_number, group, started))

            for future, job in futures.items():
                try:
                    future.result()
                except Exception as e:
                    logger.exception("agent-%d crashed", job.agent_number)
                    if not job.is_terminal:
                        job.fail(f"Unexpected error: {e}")

        status = BatchStatus.collect(jobs, batch_number, group, started)
        for job in jobs:
            self._reconcile(job, state)
        self.reporter.batch_finished(status)
        return jobs

    def _reconcile(self, job: AgentJob, state: RunState) -> None:
        state.input_tokens += job.input_tokens
        state.output_tokens += job.output_tokens

        if job.status == DONE:
            try:
                self.source.mark_complete(job.task.id)
            except TaskSourceError as e:
                logger.error("Could not mark task %s complete: %s", job.task.id, e)
                job.log(f"Could not mark task complete: {e}")
            state.completed_branches.append(job.branch_name)
            state.completed_by_group.setdefault(job.group, []).append(job.branch_name)
            if job.pr_url:
                state.pr_urls.append(job.pr_url)
            if self.ledger:
                self.ledger.clear_deferred(self.source.task_key(job.task))
            tail = []
        else:
            state.failed_tasks.append(job.task)
            # An interrupted job says nothing about the task itself
            if self.ledger and not self.cancel.cancelled:
                failures = self.ledger.defer_task(self.source.task_key(job.task), job.task.title)
                job.log(f"Task left pending for a later run (failed in {failures} run(s))")
            tail = job.log_tail(self.log_tail_lines)

        if self.ledger:
            self.ledger.record_job(job)
        self.reporter.job_finished(job, tail)
