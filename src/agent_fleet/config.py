"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _bool_env(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_fleet" / "fleet.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    log_dir: Path = field(default_factory=lambda: Path.home() / ".agent_fleet" / "logs")
    slack_bot_token: str | None = None

    engine: str = "claude"
    model: str | None = None
    max_parallel: int = 3
    max_iterations: int = 0
    max_retries: int = 3
    retry_delay: float = 5.0
    max_retry_delay: float = 60.0
    agent_timeout: float | None = None
    poll_interval: float = 0.3
    log_tail_lines: int = 20

    base_branch: str | None = None
    branch_prefix: str = "fleet"
    create_pr: bool = False
    draft_pr: bool = False
    skip_tests: bool = False
    skip_lint: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FLEET_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("FLEET_REPO_PATH"):
            config.repo_path = Path(repo)

        if log_dir := os.environ.get("FLEET_LOG_DIR"):
            config.log_dir = Path(log_dir)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if engine := os.environ.get("FLEET_ENGINE"):
            config.engine = engine

        if model := os.environ.get("FLEET_MODEL"):
            config.model = model

        if parallel := os.environ.get("FLEET_MAX_PARALLEL"):
            config.max_parallel = int(parallel)

        if iterations := os.environ.get("FLEET_MAX_ITERATIONS"):
            config.max_iterations = int(iterations)

        if retries := os.environ.get("FLEET_MAX_RETRIES"):
            config.max_retries = int(retries)

        if delay := os.environ.get("FLEET_RETRY_DELAY"):
            config.retry_delay = float(delay)

        if max_delay := os.environ.get("FLEET_MAX_RETRY_DELAY"):
            config.max_retry_delay = float(max_delay)

        if timeout := os.environ.get("FLEET_AGENT_TIMEOUT"):
            config.agent_timeout = float(timeout)

        if poll := os.environ.get("FLEET_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if tail := os.environ.get("FLEET_LOG_TAIL_LINES"):
            config.log_tail_lines = int(tail)

        if base := os.environ.get("FLEET_BASE_BRANCH"):
            config.base_branch = base

        if prefix := os.environ.get("FLEET_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if pr := os.environ.get("FLEET_CREATE_PR"):
            config.create_pr = _bool_env(pr)

        if draft := os.environ.get("FLEET_DRAFT_PR"):
            config.draft_pr = _bool_env(draft)

        if skip_tests := os.environ.get("FLEET_SKIP_TESTS"):
            config.skip_tests = _bool_env(skip_tests)

        if skip_lint := os.environ.get("FLEET_SKIP_LINT"):
            config.skip_lint = _bool_env(skip_lint)

        return config


def get_config() -> Config:
    return Config.from_env()
