"""End-of-run and interrupt cleanup."""

import logging
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path

from agent_fleet.core.cancel import CancelToken
from agent_fleet.core.engines import cleanup_temp_files, kill_active_processes
from agent_fleet.core.scheduler import RunState
from agent_fleet.core.worktrees import WorktreeManager
from agent_fleet.integrations.git import branch_exists

logger = logging.getLogger(__name__)

INTERRUPT_EXIT_CODE = 130


@dataclass
class CleanupReport:
    interrupted: bool = False
    killed: int = 0
    removed_worktrees: list[str] = field(default_factory=list)
    preserved_worktrees: list[str] = field(default_factory=list)
    agent_branches: list[str] = field(default_factory=list)
    integration_branches: list[str] = field(default_factory=list)
    resume_hint: str | None = None


class Finalizer:
    """Idempotent cleanup shared by the normal exit path and signal handlers.

    The signal handler only cancels the run and kills agent processes; the
    heavier teardown happens once, from the main flow, via finalize().
    """

    def __init__(
        self,
        repo_path: str | Path,
        worktrees: WorktreeManager,
        state: RunState | None = None,
        cancel: CancelToken | None = None,
    ):
        self.repo_path = Path(repo_path)
        self.worktrees = worktrees
        self.state = state
        self.cancel = cancel or CancelToken()
        self.report: CleanupReport | None = None
        self._lock = threading.Lock()
        self._previous_handlers: dict[int, object] = {}

    # ── Signals ──────────────────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame) -> None:
        if self.cancel.cancelled:
            return
        name = signal.Signals(signum).name
        logger.warning("Received %s, stopping agents", name)
        self.cancel.cancel(f"interrupted by {name}")
        kill_active_processes()

    # ── Teardown ─────────────────────────────────────────────────────────────

    def finalize(self) -> CleanupReport:
        with self._lock:
            if self.report is not None:
                return self.report

            report = CleanupReport(interrupted=self.cancel.cancelled)
            report.killed = kill_active_processes()
            cleanup_temp_files()

            teardown = self.worktrees.teardown()
            report.removed_worktrees = teardown.removed
            report.preserved_worktrees = teardown.preserved
            for path in teardown.preserved:
                logger.warning("Preserving dirty worktree: %s", path)

            if self.state is not None:
                report.agent_branches = [
                    job.branch_name
                    for job in self.state.jobs
                    if job.branch_name and branch_exists(self.repo_path, job.branch_name)
                ]
                report.integration_branches = [
                    ib.name
                    for ib in self.state.integration_branches
                    if branch_exists(self.repo_path, ib.name)
                ]
                if report.integration_branches:
                    report.resume_hint = (
                        f"To resume: merge integration branches into {self.state.original_base}"
                    )

            self.report = report
            self.restore_signal_handlers()
            return report
