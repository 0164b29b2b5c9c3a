"""Read-only web dashboard over the run ledger."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from agent_fleet.config import get_config
from agent_fleet.core import ledger as ledger_mod
from agent_fleet.db.engine import init_db
from agent_fleet.web.dashboard import get_dashboard_html


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_runs(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        runs = ledger_mod.list_runs(db, status=status_filter)
        return JSONResponse([_run_dict(r) for r in runs])
    finally:
        db.close()


async def api_get_run(request: Request):
    run_id = request.path_params["run_id"]
    db = _get_db()
    try:
        run = ledger_mod.get_run(db, run_id)
        if not run:
            return JSONResponse({"error": "Run not found"}, status_code=404)
        rd = _run_dict(run)
        rd["integrations"] = [
            _integration_dict(i) for i in ledger_mod.list_integrations(db, run_id)
        ]
        return JSONResponse(rd)
    finally:
        db.close()


async def api_run_jobs(request: Request):
    run_id = request.path_params["run_id"]
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        if not ledger_mod.get_run(db, run_id):
            return JSONResponse({"error": "Run not found"}, status_code=404)
        jobs = ledger_mod.list_jobs(db, run_id)
        if status_filter:
            jobs = [j for j in jobs if j.status == status_filter]
        return JSONResponse([_job_dict(j) for j in jobs])
    finally:
        db.close()


async def api_run_events(request: Request):
    run_id = request.path_params["run_id"]
    db = _get_db()
    try:
        if not ledger_mod.get_run(db, run_id):
            return JSONResponse({"error": "Run not found"}, status_code=404)
        return JSONResponse([_event_dict(e) for e in ledger_mod.list_events(db, run_id)])
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value):
    return value.isoformat() if value else None


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "repo_path": r.repo_path,
        "engine": r.engine,
        "source": r.source,
        "base_branch": r.base_branch,
        "max_parallel": r.max_parallel,
        "status": r.status,
        "tasks_done": r.tasks_done,
        "tasks_failed": r.tasks_failed,
        "input_tokens": r.input_tokens,
        "output_tokens": r.output_tokens,
        "started_at": _iso(r.started_at),
        "finished_at": _iso(r.finished_at),
    }


def _job_dict(j) -> dict:
    return {
        "agent_number": j.agent_number,
        "task_id": j.task_id,
        "task_title": j.task_title,
        "group_number": j.group_number,
        "batch_number": j.batch_number,
        "branch_name": j.branch_name,
        "status": j.status,
        "commit_count": j.commit_count,
        "input_tokens": j.input_tokens,
        "output_tokens": j.output_tokens,
        "error": j.error,
        "pr_url": j.pr_url,
        "log_path": j.log_path,
        "started_at": _iso(j.started_at),
        "finished_at": _iso(j.finished_at),
    }


def _integration_dict(i) -> dict:
    return {
        "name": i.name,
        "group_number": i.group_number,
        "status": i.status,
        "merged_branches": i.merged_branches,
        "created_at": _iso(i.created_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "message": e.message,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/runs", api_list_runs),
        Route("/api/runs/{run_id}", api_get_run),
        Route("/api/runs/{run_id}/jobs", api_run_jobs),
        Route("/api/runs/{run_id}/events", api_run_events),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
