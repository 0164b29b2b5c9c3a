"""Tests for the web dashboard API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from agent_fleet.core.ledger import RunLedger
from agent_fleet.core.runner import DONE, FAILED, AgentJob
from agent_fleet.db.engine import init_db
from agent_fleet.db.models import Task
from agent_fleet.web.app import create_app


def _job(number, status, error=None):
    job = AgentJob(agent_number=number, task=Task(id=str(number), title=f"Task {number}"), base_branch="main")
    job.status = status
    job.branch_name = f"fleet/agent-{number}-task-{number}"
    job.error = error
    return job


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"FLEET_DB_PATH": str(db_path), "FLEET_REPO_PATH": tmp}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed one finished run
        db = init_db(db_path)
        ledger = RunLedger.start(
            db, repo_path=tmp, engine="claude", source="yaml:tasks.yaml", base_branch="main", max_parallel=2
        )
        ledger.record_job(_job(1, DONE))
        ledger.record_job(_job(2, FAILED, error="No new commits created"))
        ledger.record_integration("fleet/integration-group-1", 1, "merged", ["fleet/agent-1-task-1"])
        ledger.finish("completed", tasks_done=1, tasks_failed=1, input_tokens=10, output_tokens=5)
        db.close()

        app = create_app()
        client = TestClient(app)
        yield client, ledger.run_id

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestDashboardPage:
    def test_index_returns_html(self, web_env):
        client, _ = web_env
        resp = client.get("/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "Agent Fleet" in resp.text


class TestRunsAPI:
    def test_list_runs(self, web_env):
        client, run_id = web_env
        resp = client.get("/api/runs")
        assert resp.status_code == 200
        data = resp.json()
        assert [r["id"] for r in data] == [run_id]
        assert data[0]["status"] == "completed"

    def test_filter_by_status(self, web_env):
        client, _ = web_env
        assert client.get("/api/runs?status=running").json() == []

    def test_get_run_with_integrations(self, web_env):
        client, run_id = web_env
        resp = client.get(f"/api/runs/{run_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["tasks_done"] == 1
        assert data["integrations"][0]["merged_branches"] == ["fleet/agent-1-task-1"]

    def test_get_nonexistent_run(self, web_env):
        client, _ = web_env
        resp = client.get("/api/runs/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Run not found"


class TestJobsAPI:
    def test_run_jobs(self, web_env):
        client, run_id = web_env
        resp = client.get(f"/api/runs/{run_id}/jobs")
        assert resp.status_code == 200
        jobs = resp.json()
        assert [j["agent_number"] for j in jobs] == [1, 2]
        assert jobs[1]["error"] == "No new commits created"

    def test_filter_jobs(self, web_env):
        client, run_id = web_env
        jobs = client.get(f"/api/runs/{run_id}/jobs?status=failed").json()
        assert [j["agent_number"] for j in jobs] == [2]

    def test_jobs_of_missing_run(self, web_env):
        client, _ = web_env
        assert client.get("/api/runs/nope/jobs").status_code == 404

    def test_run_events(self, web_env):
        client, run_id = web_env
        events = client.get(f"/api/runs/{run_id}/events").json()
        assert [e["event_type"] for e in events] == ["run_started", "job_done", "job_failed", "run_completed"]
