"""Read-only status API for the swarm orchestrator."""

from contextlib import contextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from swarm_orchestrator.config import get_config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.scheduler import build_scheduler
from swarm_orchestrator.core.signals import SignalCoordinator


@contextmanager
def _open_store():
    config = get_config()
    store = KnowledgeStore.open(config.db_path, max_attempts=config.tx_max_attempts)
    try:
        yield store
    finally:
        store.close()


def _not_found(what: str, item_id: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found: {item_id}"}, status_code=404)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    with _open_store() as store:
        healthy = store.health_check()
        counts = store.counts()
        metrics = store.metrics.as_dict()
    return JSONResponse(
        {"status": "ok" if healthy else "unavailable", **counts, "transactions": metrics},
        status_code=200 if healthy else 503,
    )


async def api_list_projects(request: Request):
    with _open_store() as store:
        projects = store.read(projects_mod.list_projects)
    return JSONResponse([_project_dict(p) for p in projects])


async def api_project_status(request: Request):
    project_id = request.path_params["project_id"]
    config = get_config()
    with _open_store() as store:
        if not store.read(projects_mod.get_project, project_id):
            return _not_found("Project", project_id)
        status = build_scheduler(config, store).status(project_id)
    return JSONResponse(status)


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    stage_filter = request.query_params.get("stage")
    with _open_store() as store:
        tasks = store.read(tasks_mod.list_tasks, project_id, status=status_filter, stage=stage_filter)
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _open_store() as store:
        task = store.read(tasks_mod.get_task, task_id)
        if not task:
            return _not_found("Task", task_id)
        result = _task_dict(task)
        result["description"] = task.description
        result["metadata"] = task.metadata
        result["dependents"] = [t.id for t in store.read(tasks_mod.get_dependents, task_id)]
        result["events"] = [
            {
                "event_type": e.event_type,
                "old_value": e.old_value,
                "new_value": e.new_value,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in store.read(tasks_mod.get_task_events, task_id)
        ]
        result["failures"] = [
            {"id": f.id, "kind": f.kind, "severity": f.severity, "stage": f.stage, "message": f.message}
            for f in store.read(artifacts.get_task_failures, task_id)
        ]
        result["workers"] = [
            {"id": w.id, "role": w.role, "status": w.status, "session_id": w.session_id,
             "helper": w.helper, "exit_code": w.exit_code}
            for w in store.read(artifacts.list_task_workers, task_id)
        ]
    return JSONResponse(result)


async def api_project_graph(request: Request):
    project_id = request.path_params["project_id"]
    with _open_store() as store:
        if not store.read(projects_mod.get_project, project_id):
            return _not_found("Project", project_id)
        graph = store.knowledge_graph(project_id)
    return JSONResponse(graph)


async def api_signals(request: Request):
    kind = request.query_params.get("kind")
    role = request.query_params.get("role")
    limit = int(request.query_params.get("limit", 50))
    with _open_store() as store:
        signals = SignalCoordinator(store).query(kind=kind, role=role, limit=limit)
    return JSONResponse([
        {
            "id": s.id,
            "kind": s.kind,
            "strength": round(s.strength, 4),
            "context": s.context,
            "pattern": s.pattern.to_dict() if s.pattern else None,
            "expires_at": s.expires_at.isoformat() if s.expires_at else None,
        }
        for s in signals
    ])


async def api_contract_coverage(request: Request):
    contract_id = request.path_params["contract_id"]
    with _open_store() as store:
        try:
            coverage = store.contract_coverage(contract_id)
        except artifacts.ContractNotFoundError:
            return _not_found("Contract", contract_id)
    return JSONResponse(_coverage_dict(coverage), headers={"Cache-Control": "no-store"})


# ── Helpers ───────────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "base_branch": p.base_branch,
        "status": p.status,
        "slack_channel": p.slack_channel,
        "max_tokens": p.max_tokens,
        "max_cost": p.max_cost,
        "tokens_used": p.tokens_used,
        "cost_used": p.cost_used,
    }


def _coverage_dict(coverage: dict) -> dict:
    contract = coverage["contract"]
    return {
        "contract": {
            "id": contract.id,
            "name": contract.name,
            "kind": contract.kind,
            "version": contract.version,
        },
        "implementations": [
            {"id": m.id, "name": m.name, "file_path": m.file_path} for m in coverage["implementations"]
        ],
        "tests": [
            {"id": t.id, "name": t.name, "file_path": t.file_path, "framework": t.framework}
            for t in coverage["tests"]
        ],
        "features": [
            {"id": t.id, "title": t.title, "status": t.status} for t in coverage["features"]
        ],
        "endpoints": coverage["endpoints"],
        "coverage_pct": coverage["coverage_pct"],
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "stage": t.stage,
        "priority": t.priority,
        "retry_count": t.retry_count,
        "depends_on": t.depends_on,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/health", api_health),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/status", api_project_status),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/graph", api_project_graph),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/signals", api_signals),
        Route("/api/contracts/{contract_id}/coverage", api_contract_coverage),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
