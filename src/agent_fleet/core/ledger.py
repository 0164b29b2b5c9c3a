"""Run ledger: SQLite record of runs, agent jobs, integration branches and run events.

Also keeps per-repository failure counts for tasks that stay pending across runs.
"""

import json
import sqlite3
import uuid
from datetime import datetime

from agent_fleet.db.models import DeferredTask, IntegrationRecord, JobRecord, Run, RunEvent


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        repo_path=row["repo_path"],
        engine=row["engine"],
        source=row["source"],
        base_branch=row["base_branch"],
        max_parallel=row["max_parallel"],
        status=row["status"],
        tasks_done=row["tasks_done"],
        tasks_failed=row["tasks_failed"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        summary=row["summary"],
        started_at=_parse_dt(row["started_at"]),
        finished_at=_parse_dt(row["finished_at"]),
    )


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        id=row["id"],
        run_id=row["run_id"],
        agent_number=row["agent_number"],
        task_id=row["task_id"],
        task_title=row["task_title"],
        group_number=row["group_number"],
        batch_number=row["batch_number"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        log_path=row["log_path"],
        status=row["status"],
        commit_count=row["commit_count"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        error=row["error"],
        pr_url=row["pr_url"],
        started_at=_parse_dt(row["started_at"]),
        finished_at=_parse_dt(row["finished_at"]),
    )


def _row_to_integration(row: sqlite3.Row) -> IntegrationRecord:
    return IntegrationRecord(
        id=row["id"],
        run_id=row["run_id"],
        name=row["name"],
        group_number=row["group_number"],
        status=row["status"],
        merged_branches=json.loads(row["merged_branches"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> RunEvent:
    return RunEvent(
        id=row["id"],
        run_id=row["run_id"],
        event_type=row["event_type"],
        message=row["message"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_deferred(row: sqlite3.Row) -> DeferredTask:
    return DeferredTask(
        repo_path=row["repo_path"],
        task_key=row["task_key"],
        title=row["title"],
        failures=row["failures"],
        last_failed_at=_parse_dt(row["last_failed_at"]),
    )


# ── Writes ───────────────────────────────────────────────────────────────────


def create_run(
    db: sqlite3.Connection,
    repo_path: str,
    engine: str,
    source: str,
    base_branch: str,
    max_parallel: int,
) -> Run:
    run_id = uuid.uuid4().hex[:12]
    db.execute(
        """INSERT INTO runs (id, repo_path, engine, source, base_branch, max_parallel)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (run_id, repo_path, engine, source, base_branch, max_parallel),
    )
    log_event(db, run_id, "run_started", f"{source} with {engine}, {max_parallel} parallel")
    db.commit()
    return get_run(db, run_id)


def finish_run(
    db: sqlite3.Connection,
    run_id: str,
    status: str,
    tasks_done: int,
    tasks_failed: int,
    input_tokens: int,
    output_tokens: int,
    summary: dict | None = None,
) -> Run:
    db.execute(
        """UPDATE runs
           SET status = ?, tasks_done = ?, tasks_failed = ?, input_tokens = ?,
               output_tokens = ?, summary = ?, finished_at = datetime('now')
           WHERE id = ?""",
        (
            status,
            tasks_done,
            tasks_failed,
            input_tokens,
            output_tokens,
            json.dumps(summary) if summary is not None else None,
            run_id,
        ),
    )
    log_event(db, run_id, f"run_{status}", None)
    db.commit()
    return get_run(db, run_id)


def record_job(db: sqlite3.Connection, run_id: str, job) -> None:
    """Store a terminal AgentJob."""
    db.execute(
        """INSERT OR REPLACE INTO agent_jobs
           (run_id, agent_number, task_id, task_title, group_number, batch_number,
            branch_name, worktree_path, log_path, status, commit_count,
            input_tokens, output_tokens, error, pr_url, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            run_id,
            job.agent_number,
            job.task.id,
            job.task.title,
            job.group,
            job.batch_number,
            job.branch_name or "",
            str(job.worktree_path) if job.worktree_path else None,
            str(job.log_path) if job.log_path else None,
            job.status,
            job.commit_count,
            job.input_tokens,
            job.output_tokens,
            job.error,
            job.pr_url,
            job.started_at.isoformat(sep=" ", timespec="seconds") if job.started_at else None,
        ),
    )
    log_event(db, run_id, f"job_{job.status}", f"agent-{job.agent_number}: {job.task.title}")
    db.commit()


def record_integration(
    db: sqlite3.Connection,
    run_id: str,
    name: str,
    group_number: int,
    status: str,
    merged_branches: list[str],
) -> None:
    db.execute(
        """INSERT INTO integration_branches (run_id, name, group_number, status, merged_branches)
           VALUES (?, ?, ?, ?, ?)""",
        (run_id, name, group_number, status, json.dumps(merged_branches)),
    )
    db.commit()


def record_deferred(db: sqlite3.Connection, repo_path: str, task_key: str, title: str) -> int:
    """Count one more failed run for a task. Returns the new failure count."""
    db.execute(
        """INSERT INTO deferred_tasks (repo_path, task_key, title)
           VALUES (?, ?, ?)
           ON CONFLICT (repo_path, task_key) DO UPDATE
           SET failures = failures + 1, title = excluded.title, last_failed_at = datetime('now')""",
        (repo_path, task_key, title),
    )
    db.commit()
    row = db.execute(
        "SELECT failures FROM deferred_tasks WHERE repo_path = ? AND task_key = ?",
        (repo_path, task_key),
    ).fetchone()
    return row["failures"]


def clear_deferred(db: sqlite3.Connection, repo_path: str, task_key: str) -> None:
    db.execute(
        "DELETE FROM deferred_tasks WHERE repo_path = ? AND task_key = ?", (repo_path, task_key)
    )
    db.commit()


def log_event(db: sqlite3.Connection, run_id: str, event_type: str, message: str | None):
    db.execute(
        "INSERT INTO run_events (run_id, event_type, message) VALUES (?, ?, ?)",
        (run_id, event_type, message),
    )


# ── Reads ────────────────────────────────────────────────────────────────────


def get_run(db: sqlite3.Connection, run_id: str) -> Run | None:
    row = db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def list_runs(db: sqlite3.Connection, status: str | None = None, limit: int = 50) -> list[Run]:
    query = "SELECT * FROM runs WHERE 1=1"
    params: list = []
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_run(r) for r in rows]


def list_jobs(db: sqlite3.Connection, run_id: str) -> list[JobRecord]:
    rows = db.execute(
        "SELECT * FROM agent_jobs WHERE run_id = ? ORDER BY agent_number", (run_id,)
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def list_integrations(db: sqlite3.Connection, run_id: str) -> list[IntegrationRecord]:
    rows = db.execute(
        "SELECT * FROM integration_branches WHERE run_id = ? ORDER BY id", (run_id,)
    ).fetchall()
    return [_row_to_integration(r) for r in rows]


def list_events(db: sqlite3.Connection, run_id: str) -> list[RunEvent]:
    rows = db.execute(
        "SELECT * FROM run_events WHERE run_id = ? ORDER BY id", (run_id,)
    ).fetchall()
    return [_row_to_event(r) for r in rows]


def list_deferred(db: sqlite3.Connection, repo_path: str) -> list[DeferredTask]:
    rows = db.execute(
        "SELECT * FROM deferred_tasks WHERE repo_path = ? ORDER BY failures DESC, task_key",
        (repo_path,),
    ).fetchall()
    return [_row_to_deferred(r) for r in rows]


class RunLedger:
    """Binds a connection to one run so the scheduler and merger can record as they go."""

    def __init__(self, db: sqlite3.Connection, run_id: str, repo_path: str = ""):
        self.db = db
        self.run_id = run_id
        self.repo_path = repo_path

    @classmethod
    def start(cls, db: sqlite3.Connection, **run_fields) -> "RunLedger":
        run = create_run(db, **run_fields)
        return cls(db, run.id, run.repo_path)

    def record_job(self, job) -> None:
        record_job(self.db, self.run_id, job)

    def record_integration(self, name: str, group: int, status: str, merged: list[str]) -> None:
        record_integration(self.db, self.run_id, name, group, status, merged)

    def defer_task(self, task_key: str, title: str) -> int:
        return record_deferred(self.db, self.repo_path, task_key, title)

    def clear_deferred(self, task_key: str) -> None:
        clear_deferred(self.db, self.repo_path, task_key)

    def event(self, event_type: str, message: str | None = None) -> None:
        log_event(self.db, self.run_id, event_type, message)
        self.db.commit()

    def finish(self, status: str, **totals) -> Run:
        return finish_run(self.db, self.run_id, status, **totals)
