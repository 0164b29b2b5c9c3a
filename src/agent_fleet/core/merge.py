"""Merge stages: per-group integration branches and the final merge into the base branch.

These are the only steps that switch the primary checkout.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from agent_fleet.core.engines import AgentBackend
from agent_fleet.core.prompts import build_conflict_prompt
from agent_fleet.core.scheduler import IntegrationBranch, Reporter, RunState
from agent_fleet.integrations.git import (
    GitError,
    checkout,
    commit_merge,
    conflicted_files,
    create_branch,
    delete_branch,
    get_current_branch,
    is_ancestor,
    merge,
    merge_abort,
    merge_in_progress,
)

if TYPE_CHECKING:
    from agent_fleet.core.ledger import RunLedger

logger = logging.getLogger(__name__)

MERGED = "merged"
RESOLVED = "resolved"
UNRESOLVED = "unresolved"


def integration_branch_name(prefix: str, group: int) -> str:
    return f"{prefix}/integration-group-{group}"


# ── Group integration ────────────────────────────────────────────────────────


def _restore_checkout(repo: Path, previous: str, fallback: str) -> None:
    for ref in dict.fromkeys([previous, fallback]):
        if not ref:
            continue
        try:
            checkout(repo, ref)
            return
        except GitError as e:
            logger.warning("Could not check out %s: %s", ref, e)


def integrate_group(
    repo_path: str | Path,
    state: RunState,
    group: int,
    branch_prefix: str = "fleet",
    reporter: Reporter | None = None,
    ledger: "RunLedger | None" = None,
) -> IntegrationBranch | None:
    """Merge a finished group's branches into a fresh integration branch.

    On success the integration branch becomes the base for the next group.
    On any failure it is deleted and the base is left as it was.
    """
    repo = Path(repo_path)
    reporter = reporter or Reporter()
    branches = state.completed_by_group.get(group, [])
    if not branches:
        reporter.note(f"Group {group}: no completed branches, skipping integration")
        return None

    name = integration_branch_name(branch_prefix, group)
    previous = get_current_branch(repo)
    created = False
    merged: list[str] = []
    failure: str | None = None

    try:
        create_branch(repo, name, state.current_base)
        created = True
        checkout(repo, name)
        for branch in branches:
            try:
                merge(repo, branch)
            except GitError:
                merge_abort(repo)
                failure = f"conflict merging {branch}"
                break
            merged.append(branch)
    except GitError as e:
        failure = str(e)
    finally:
        _restore_checkout(repo, previous, state.original_base)

    if failure is None:
        integration = IntegrationBranch(name=name, source_group=group, merged_branches=merged)
        state.integration_branches.append(integration)
        state.current_base = name
        reporter.note(f"Group {group}: integrated {len(merged)} branch(es) into {name}")
        if ledger:
            ledger.record_integration(name, group, "merged", merged)
        return integration

    if created:
        try:
            delete_branch(repo, name, force=True)
        except GitError as e:
            logger.warning("Could not delete failed integration branch %s: %s", name, e)
    logger.warning("Group %d integration failed: %s", group, failure)
    reporter.note(
        f"Group {group}: integration failed ({failure}); next group stays on {state.current_base}"
    )
    if ledger:
        ledger.record_integration(name, group, "failed", merged)
        ledger.event("integration_failed", f"group {group}: {failure}")
    return None


# ── Final reconciliation ─────────────────────────────────────────────────────


@dataclass
class ReconcileResult:
    merged: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    unmerged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    pr_branches: list[str] = field(default_factory=list)
    error: str | None = None


def _delete(repo: Path, branch: str, result: ReconcileResult, force: bool = False) -> None:
    try:
        delete_branch(repo, branch, force=force)
        result.deleted.append(branch)
    except GitError as e:
        logger.warning("Could not delete branch %s: %s", branch, e)


def reconcile(
    repo_path: str | Path,
    state: RunState,
    resolver: AgentBackend | None = None,
    prs_opened: bool = False,
    reporter: Reporter | None = None,
) -> ReconcileResult:
    """Bring every completed branch back into the original base branch."""
    repo = Path(repo_path)
    reporter = reporter or Reporter()
    result = ReconcileResult()

    if not state.completed_branches:
        return result

    if prs_opened:
        result.pr_branches = list(state.completed_branches)
        reporter.note("Pull requests were opened; branches are left for review")
        return result

    try:
        checkout(repo, state.original_base)
    except GitError as e:
        result.error = f"Could not check out {state.original_base}: {e}"
        result.unmerged = list(state.completed_branches)
        return result

    if state.integration_branches:
        _merge_integration_chain(repo, state, result, reporter)
        return result

    conflicts = []
    for branch in state.completed_branches:
        try:
            merge(repo, branch)
        except GitError:
            merge_abort(repo)
            conflicts.append(branch)
            reporter.note(f"Conflict merging {branch}")
            continue
        result.merged.append(branch)
        _delete(repo, branch, result)

    for branch in conflicts:
        outcome = resolve_conflict(repo, branch, resolver, reporter)
        if outcome == UNRESOLVED:
            result.unresolved.append(branch)
            continue
        if outcome == MERGED:
            result.merged.append(branch)
        else:
            result.resolved.append(branch)
        _delete(repo, branch, result)

    return result


def _merge_integration_chain(
    repo: Path,
    state: RunState,
    result: ReconcileResult,
    reporter: Reporter,
) -> None:
    last = state.integration_branches[-1]
    try:
        merge(repo, last.name)
    except GitError as e:
        merge_abort(repo)
        result.error = f"Failed to merge {last.name}: {e}"
        result.unmerged = list(state.completed_branches)
        reporter.note(result.error)
        return

    result.merged.append(last.name)
    covered = {b for integration in state.integration_branches for b in integration.merged_branches}
    for branch in state.completed_branches:
        if branch in covered:
            _delete(repo, branch, result, force=True)
        else:
            result.unmerged.append(branch)
    for integration in state.integration_branches:
        _delete(repo, integration.name, result, force=True)


def resolve_conflict(
    repo_path: str | Path,
    branch: str,
    resolver: AgentBackend | None,
    reporter: Reporter | None = None,
) -> str:
    """One agent-assisted attempt at merging a conflicting branch.

    Returns MERGED when the merge now applies cleanly, RESOLVED when the agent
    fixed the conflicts, UNRESOLVED otherwise. The primary checkout is left
    without a merge in progress either way.
    """
    repo = Path(repo_path)
    reporter = reporter or Reporter()
    try:
        merge(repo, branch)
        return MERGED  # Earlier merges made it apply cleanly
    except GitError:
        pass  # Expected: conflict markers are now in the working tree

    files = conflicted_files(repo)
    if resolver is None or not files:
        merge_abort(repo)
        return UNRESOLVED

    reporter.note(f"Resolving {len(files)} conflicted file(s) from {branch} with the agent")
    try:
        agent_result = resolver.execute(build_conflict_prompt(files, branch), repo)
        if agent_result.error:
            logger.warning("Conflict resolver reported an error: %s", agent_result.error)

        if conflicted_files(repo):
            merge_abort(repo)
            return UNRESOLVED
        if merge_in_progress(repo):
            commit_merge(repo)
    except GitError as e:
        logger.warning("Conflict resolution for %s failed: %s", branch, e)
        merge_abort(repo)
        return UNRESOLVED
    except Exception:
        merge_abort(repo)
        raise

    return RESOLVED if is_ancestor(repo, branch, "HEAD") else UNRESOLVED
