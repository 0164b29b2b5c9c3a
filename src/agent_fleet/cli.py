"""CLI entry point for agent fleet."""

import json
import logging
import sys
from pathlib import Path

import click

from agent_fleet.config import get_config
from agent_fleet.core import ledger as ledger_mod
from agent_fleet.core.engines import ENGINES, get_engine
from agent_fleet.core.orchestrator import RunSummary, SetupError, run_tasks
from agent_fleet.core.runner import DONE
from agent_fleet.core.scheduler import BatchStatus, Reporter
from agent_fleet.core.tasks import TaskSourceError, open_task_source
from agent_fleet.db.engine import get_db
from agent_fleet.integrations import slack as slack_mod
from agent_fleet.integrations.git import GitError, worktree_list


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _source_options(f):
    options = [
        click.option("--prd", default=None, help="Markdown checklist file (default: PRD.md)"),
        click.option("--yaml", "yaml_file", default=None, help="YAML task file with parallel groups"),
        click.option("--folder", default=None, help="Folder of markdown checklist files"),
        click.option("--github", "github_repo", default=None, help="Use open issues of owner/repo"),
        click.option("--github-label", default=None, help="Only issues with this label"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _open_source(prd, yaml_file, folder, github_repo, github_label):
    try:
        return open_task_source(prd, yaml_file, folder, github_repo, github_label)
    except TaskSourceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose):
    """fleet - run coding agents in parallel git worktrees"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Progress Output ───────────────────────────────────────────────────────────


class ClickReporter(Reporter):
    def __init__(self):
        self._last = None

    def batch_started(self, batch_number, group, jobs):
        label = f" (group {group})" if group else ""
        click.echo(f"Batch {batch_number}{label}: {len(jobs)} agent(s)")
        for job in jobs:
            click.echo(f"  agent-{job.agent_number}: {job.task.title}")

    def batch_progress(self, status: BatchStatus):
        counts = (status.setting_up, status.running, status.done, status.failed)
        if counts == self._last:
            return
        self._last = counts
        steps = ", ".join(f"#{n} {step}" for n, step in sorted(status.steps.items()))
        click.echo(
            f"  [{int(status.elapsed) // 60:02d}:{int(status.elapsed) % 60:02d}] "
            f"setup {status.setting_up} | running {status.running} | "
            f"done {status.done} | failed {status.failed}"
            + (f" | {steps}" if steps else "")
        )

    def batch_finished(self, status: BatchStatus):
        self._last = None
        click.echo(f"Batch {status.batch_number} finished: {status.done} done, {status.failed} failed")

    def job_finished(self, job, log_tail):
        if job.status == DONE:
            click.echo(f"  ✓ {job.task.title} -> {job.branch_name}")
            return
        click.echo(f"  ✗ {job.task.title}: {job.error}")
        for line in log_tail:
            click.echo(f"      {line}")

    def note(self, message):
        click.echo(message)


def _print_summary(summary: RunSummary):
    click.echo("")
    click.echo(f"Tasks done: {summary.done}  failed: {summary.failed}")
    click.echo(f"Completed in source: {summary.completed_before} -> {summary.completed_after}")
    if summary.input_tokens or summary.output_tokens:
        click.echo(
            f"Tokens: {summary.input_tokens} in / {summary.output_tokens} out "
            f"(~${summary.cost:.4f})"
        )
    if summary.merged:
        click.echo(f"Merged into {summary.base_branch}: {', '.join(summary.merged)}")
    if summary.resolved:
        click.echo(f"Merged after conflict resolution: {', '.join(summary.resolved)}")
    if summary.unresolved:
        click.echo(f"Unresolved conflicts: {', '.join(summary.unresolved)}")
    if summary.unmerged:
        click.echo(f"Not merged: {', '.join(summary.unmerged)}")
    if summary.merge_error:
        click.echo(f"Merge error: {summary.merge_error}", err=True)
    for url in summary.pr_urls:
        click.echo(f"Pull request: {url}")
    for path in summary.preserved_worktrees:
        click.echo(f"Preserved dirty worktree: {path}")
    if summary.interrupted:
        if summary.remaining_branches:
            click.echo(f"Branches created: {', '.join(summary.remaining_branches)}")
        if summary.integration_branches:
            click.echo(f"Integration branches: {', '.join(summary.integration_branches)}")
        if summary.resume_hint:
            click.echo(summary.resume_hint)
    if summary.run_id:
        click.echo(f"Run: {summary.run_id}")


# ── Run Commands ──────────────────────────────────────────────────────────────


@main.command("run")
@_source_options
@click.option("--engine", default=None, type=click.Choice(sorted(ENGINES)), help="Agent CLI to use")
@click.option("--model", default=None, help="Model override passed to the agent")
@click.option("--max-parallel", "-j", default=None, type=int, help="Agents per batch")
@click.option("--max-iterations", default=None, type=int, help="Stop after this many agents (0 = no limit)")
@click.option("--max-retries", default=None, type=int, help="Attempts per agent")
@click.option("--retry-delay", default=None, type=float, help="Base retry delay in seconds")
@click.option("--timeout", default=None, type=float, help="Kill an agent attempt after N seconds")
@click.option("--base-branch", default=None, help="Branch to start from (default: current)")
@click.option("--branch-prefix", default=None, help="Prefix for created branches")
@click.option("--create-pr", is_flag=True, help="Push branches and open pull requests")
@click.option("--draft-pr", is_flag=True, help="Open pull requests as drafts")
@click.option("--skip-tests", is_flag=True, help="Do not ask agents to write or run tests")
@click.option("--skip-lint", is_flag=True, help="Do not ask agents to lint")
@click.option("--fast", is_flag=True, help="Same as --skip-tests --skip-lint")
@click.option("--repo", default=None, type=click.Path(file_okay=False), help="Repository path")
@click.option("--notify", default=None, help="Slack channel for the run summary")
@click.option("--json-output", "--json", is_flag=True, help="Print the summary as JSON")
def run_command(
    prd, yaml_file, folder, github_repo, github_label,
    engine, model, max_parallel, max_iterations, max_retries, retry_delay, timeout,
    base_branch, branch_prefix, create_pr, draft_pr, skip_tests, skip_lint, fast,
    repo, notify, json_output,
):
    """Run every pending task with parallel agents and merge the results."""
    config = get_config()
    overrides = {
        "engine": engine,
        "model": model,
        "max_parallel": max_parallel,
        "max_iterations": max_iterations,
        "max_retries": max_retries,
        "retry_delay": retry_delay,
        "agent_timeout": timeout,
        "base_branch": base_branch,
        "branch_prefix": branch_prefix,
        # Flags can only switch a setting on
        "create_pr": True if create_pr or draft_pr else None,
        "draft_pr": True if draft_pr else None,
        "skip_tests": True if fast or skip_tests else None,
        "skip_lint": True if fast or skip_lint else None,
        "repo_path": Path(repo) if repo else None,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    source = _open_source(prd, yaml_file, folder, github_repo, github_label)
    backend = get_engine(config.engine, model=config.model, timeout=config.agent_timeout)

    with _get_db() as db:
        try:
            summary = run_tasks(source, backend, config, reporter=ClickReporter(), db=db)
        except (SetupError, TaskSourceError, GitError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if json_output:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)

    if notify:
        try:
            slack_mod.notify_run_summary(config.slack_bot_token, notify, summary.to_dict())
        except slack_mod.SlackError as e:
            click.echo(f"Slack notification failed: {e}", err=True)

    if summary.interrupted:
        click.echo("Interrupted! Cleaned up.", err=True)
        sys.exit(130)


@main.command("tasks")
@_source_options
@click.option("--repo", default=None, type=click.Path(file_okay=False), help="Repository path")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def tasks_command(prd, yaml_file, folder, github_repo, github_label, repo, json_output):
    """List pending tasks, how they would be grouped and how often each has failed."""
    source = _open_source(prd, yaml_file, folder, github_repo, github_label)
    try:
        tasks = source.get_all_tasks()
        completed = source.count_completed()
    except TaskSourceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    config = get_config()
    repo_path = (Path(repo) if repo else config.repo_path).resolve()
    with _get_db() as db:
        failures = {d.task_key: d.failures for d in ledger_mod.list_deferred(db, str(repo_path))}

    if json_output:
        click.echo(json.dumps(
            [_task_dict(t, failures.get(source.task_key(t), 0)) for t in tasks], indent=2
        ))
        return

    if not tasks:
        click.echo(f"No pending tasks ({completed} completed).")
        return

    for task in tasks:
        group = f"[group {task.group}] " if source.supports_groups else ""
        count = failures.get(source.task_key(task))
        deferred = f"  (failed {count}x)" if count else ""
        click.echo(f"  ○ {group}{task.id}: {task.title}{deferred}")
    click.echo(f"{len(tasks)} pending, {completed} completed")


# ── Ledger Commands ───────────────────────────────────────────────────────────


@main.group("runs")
def runs_group():
    """Inspect past runs."""
    pass


@runs_group.command("list")
@click.option("--status", default=None, help="Filter: running, completed, failed, cancelled")
@click.option("--limit", default=20, type=int)
def runs_list(status, limit):
    """List recent runs."""
    with _get_db() as db:
        runs = ledger_mod.list_runs(db, status=status, limit=limit)
        if not runs:
            click.echo("No runs found.")
            return
        for run in runs:
            started = run.started_at.strftime("%Y-%m-%d %H:%M") if run.started_at else "?"
            click.echo(
                f"  {run.id}  {started}  {run.status:<9} done {run.tasks_done} "
                f"failed {run.tasks_failed}  {run.source}"
            )


@runs_group.command("show")
@click.argument("run_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def runs_show(run_id, json_output):
    """Show the jobs and merges of one run."""
    with _get_db() as db:
        run = ledger_mod.get_run(db, run_id)
        if not run:
            click.echo(f"Run not found: {run_id}", err=True)
            sys.exit(1)
        jobs = ledger_mod.list_jobs(db, run_id)
        integrations = ledger_mod.list_integrations(db, run_id)

        if json_output:
            click.echo(json.dumps({
                "id": run.id,
                "status": run.status,
                "base_branch": run.base_branch,
                "summary": json.loads(run.summary) if run.summary else None,
                "jobs": [
                    {
                        "agent_number": j.agent_number,
                        "task": j.task_title,
                        "status": j.status,
                        "branch": j.branch_name,
                        "error": j.error,
                    }
                    for j in jobs
                ],
            }, indent=2))
            return

        click.echo(f"Run {run.id} ({run.status})")
        click.echo(f"  Repo: {run.repo_path}")
        click.echo(f"  Base: {run.base_branch}  Engine: {run.engine}  Source: {run.source}")
        click.echo(f"  Tokens: {run.input_tokens} in / {run.output_tokens} out")
        for job in jobs:
            icon = "✓" if job.status == "done" else "✗"
            error = f" ({job.error})" if job.error else ""
            click.echo(f"  {icon} agent-{job.agent_number} {job.task_title} [{job.branch_name}]{error}")
        for ib in integrations:
            click.echo(f"  ⇢ {ib.name}: {ib.status} ({len(ib.merged_branches)} branches)")


# ── Worktree Commands ─────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Inspect git worktrees."""
    pass


@worktree_group.command("list")
@click.option("--repo", default=None, help="Repository path")
def worktree_list_cmd(repo):
    """List worktrees, marking those created by agent runs."""
    config = get_config()
    repo_path = Path(repo) if repo else config.repo_path
    try:
        worktrees = worktree_list(repo_path)
    except GitError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    prefix = f"{config.branch_prefix}/"
    for wt in worktrees:
        marker = "*" if wt.branch.startswith(prefix) else " "
        click.echo(f"{marker} {wt.path}  {wt.branch or '(detached)'}  {wt.head[:8]}")


# ── Web UI Command ────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the run dashboard."""
    import webbrowser

    from agent_fleet.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task, failures: int = 0) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "group": task.group,
        "body": task.body,
        "failures": failures,
    }


if __name__ == "__main__":
    main()
