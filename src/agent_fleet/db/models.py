"""Data models for agent fleet."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Task:
    id: str
    title: str
    body: str = ""
    completed: bool = False
    group: int = 0


@dataclass
class Run:
    id: str
    repo_path: str
    engine: str
    source: str
    base_branch: str
    max_parallel: int
    status: str = "running"
    tasks_done: int = 0
    tasks_failed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    summary: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class JobRecord:
    run_id: str
    agent_number: int
    task_id: str
    task_title: str
    branch_name: str
    status: str
    id: int | None = None
    group_number: int = 0
    batch_number: int = 0
    worktree_path: str | None = None
    log_path: str | None = None
    commit_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    pr_url: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class IntegrationRecord:
    run_id: str
    name: str
    group_number: int
    status: str
    id: int | None = None
    merged_branches: list[str] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class RunEvent:
    run_id: str
    event_type: str
    id: int | None = None
    message: str | None = None
    created_at: datetime | None = None


@dataclass
class DeferredTask:
    repo_path: str
    task_key: str
    title: str
    failures: int = 1
    last_failed_at: datetime | None = None
