"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    repo_path TEXT NOT NULL,
    engine TEXT NOT NULL,
    source TEXT NOT NULL,
    base_branch TEXT NOT NULL,
    max_parallel INTEGER NOT NULL,
    status TEXT DEFAULT 'running' CHECK (status IN ('running', 'completed', 'failed', 'cancelled')),
    tasks_done INTEGER DEFAULT 0,
    tasks_failed INTEGER DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    summary TEXT,
    started_at TEXT DEFAULT (datetime('now')),
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS agent_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    agent_number INTEGER NOT NULL,
    task_id TEXT NOT NULL,
    task_title TEXT NOT NULL,
    group_number INTEGER DEFAULT 0,
    batch_number INTEGER DEFAULT 0,
    branch_name TEXT NOT NULL,
    worktree_path TEXT,
    log_path TEXT,
    status TEXT NOT NULL CHECK (status IN ('done', 'failed')),
    commit_count INTEGER DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    error TEXT,
    pr_url TEXT,
    started_at TEXT,
    finished_at TEXT DEFAULT (datetime('now')),
    UNIQUE(run_id, agent_number)
);

CREATE TABLE IF NOT EXISTS integration_branches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    group_number INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('merged', 'failed')),
    merged_branches TEXT DEFAULT '[]',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS run_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    message TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Tasks that failed and were left pending, counted across runs per repository
CREATE TABLE IF NOT EXISTS deferred_tasks (
    repo_path TEXT NOT NULL,
    task_key TEXT NOT NULL,
    title TEXT NOT NULL,
    failures INTEGER NOT NULL DEFAULT 1,
    last_failed_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (repo_path, task_key)
);

CREATE INDEX IF NOT EXISTS idx_agent_jobs_run ON agent_jobs(run_id);
CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events(run_id);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # The scheduler thread owns writes; the dashboard opens its own connections
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
