"""Tests for environment configuration."""

from pathlib import Path

from agent_fleet.config import Config


class TestConfig:
    def test_defaults(self, monkeypatch):
        for key in ("FLEET_MAX_PARALLEL", "FLEET_ENGINE", "FLEET_CREATE_PR", "FLEET_BRANCH_PREFIX"):
            monkeypatch.delenv(key, raising=False)
        config = Config.from_env()
        assert config.engine == "claude"
        assert config.max_parallel == 3
        assert config.max_retries == 3
        assert config.branch_prefix == "fleet"
        assert config.create_pr is False

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FLEET_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("FLEET_ENGINE", "codex")
        monkeypatch.setenv("FLEET_MAX_PARALLEL", "5")
        monkeypatch.setenv("FLEET_RETRY_DELAY", "0.5")
        monkeypatch.setenv("FLEET_AGENT_TIMEOUT", "600")
        monkeypatch.setenv("FLEET_CREATE_PR", "yes")
        monkeypatch.setenv("FLEET_SKIP_TESTS", "0")
        config = Config.from_env()
        assert config.db_path == Path(tmp_path / "x.db")
        assert config.engine == "codex"
        assert config.max_parallel == 5
        assert config.retry_delay == 0.5
        assert config.agent_timeout == 600.0
        assert config.create_pr is True
        assert config.skip_tests is False
