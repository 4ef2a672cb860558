"""MCP server through which workers read context and record their work."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from mcp.server.fastmcp import Context, FastMCP

from swarm_orchestrator.config import Config, get_config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.signals import SignalCoordinator, SignalValidationError
from swarm_orchestrator.core.workflow import STEP_CONFIGS
from swarm_orchestrator.db.models import SEVERITIES, SignalPattern


@dataclass
class AppContext:
    store: KnowledgeStore
    signals: SignalCoordinator
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the knowledge store on startup, close on shutdown."""
    config = get_config()
    store = KnowledgeStore.open(config.db_path, max_attempts=config.tx_max_attempts)
    try:
        yield AppContext(store=store, signals=SignalCoordinator(store), config=config)
    finally:
        store.close()


mcp = FastMCP("swarm-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _task_or_error(app: AppContext, task_id: str):
    task = app.store.read(tasks_mod.get_task, task_id)
    if not task:
        return None, {"error": f"Task not found: {task_id}"}
    return task, None


# ── Context Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its stage guidance and the results of its dependencies."""
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error
    step = STEP_CONFIGS[task.stage]
    deps = app.store.read(tasks_mod.get_dependencies, task_id)
    return {
        **_task_to_dict(task),
        "guidance": step.guidance,
        "expected_outputs": list(step.expected_outputs),
        "dependencies": [
            {
                "id": d.id,
                "title": d.title,
                "status": d.status,
                "result_summary": d.metadata.get("result_summary"),
            }
            for d in deps
        ],
    }


@mcp.tool()
def get_guidance(
    ctx: Context,
    role: str,
    stage: str | None = None,
    complexity: str | None = None,
) -> dict:
    """Get guidance and warnings learned from earlier work for a role."""
    app = _ctx(ctx)
    buckets = app.signals.contextual(role, f"stage:{stage}" if stage else "", complexity)
    return {
        "guides": [_signal_to_dict(s) for s in buckets["guides"]],
        "warnings": [_signal_to_dict(s) for s in buckets["warnings"]],
    }


# ── Report Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def report_impasse(
    ctx: Context,
    task_id: str,
    description: str,
    attempted: list[str] | None = None,
    severity: str = "medium",
) -> dict:
    """Report that you cannot make progress on a task without help.

    The orchestrator stops your session and brings in a helper.
    """
    return _file_report(ctx, task_id, "impasse_report", {
        "description": description,
        "attempted": list(attempted or []),
        "severity": severity,
    })


@mcp.tool()
def report_critique_failure(
    ctx: Context,
    task_id: str,
    description: str,
    severity: str,
    issues: list[str] | None = None,
    upstream_task_id: str | None = None,
) -> dict:
    """Report that upstream work fails quality review.

    Severity (low, medium, high, critical) decides how much pending work is paused.
    """
    return _file_report(ctx, task_id, "critique_report", {
        "description": description,
        "severity": severity,
        "issues": list(issues or []),
        "upstream_task_id": upstream_task_id,
    })


def _file_report(ctx: Context, task_id: str, key: str, report: dict) -> dict:
    app = _ctx(ctx)
    if report["severity"] not in SEVERITIES:
        return {"error": f"Invalid severity: {report['severity']}"}
    task, error = _task_or_error(app, task_id)
    if error:
        return error
    report["reported_at"] = datetime.now(timezone.utc).isoformat()
    app.store.write(tasks_mod.update_task, task_id, metadata={key: report})
    return {"task_id": task_id, "recorded": key}


# ── Artifact Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def record_decision(
    ctx: Context,
    task_id: str,
    title: str,
    rationale: str,
    description: str = "",
) -> dict:
    """Record a design decision made while working on a task."""
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error
    decision = app.store.write(
        artifacts.create_decision,
        task.project_id,
        title,
        description=description,
        rationale=rationale,
        task_id=task_id,
    )
    return {"id": decision.id, "title": decision.title}


@mcp.tool()
def record_contract(
    ctx: Context,
    task_id: str,
    name: str,
    specification: dict | None = None,
    kind: str = "openapi",
    version: str = "1.0.0",
    description: str = "",
) -> dict:
    """Record an interface contract (e.g. an OpenAPI document) that defines a task's feature."""
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error

    def _record(db):
        contract = artifacts.create_contract(
            db, task.project_id, name, specification, kind=kind, version=version, description=description
        )
        artifacts.link_contract_to_task(db, contract.id, task_id)
        return contract

    contract = app.store.write(_record)
    return {
        "id": contract.id,
        "name": contract.name,
        "endpoints": [{"path": p, "method": m} for p, m in artifacts.contract_endpoints(contract)],
    }


@mcp.tool()
def record_code_module(
    ctx: Context,
    task_id: str,
    name: str,
    file_path: str,
    language: str = "python",
    contract_id: str | None = None,
    endpoints: list[dict] | None = None,
) -> dict:
    """Record a code module, optionally as implementing endpoints of a contract.

    Endpoints are given as [{"path": "/users", "method": "GET"}].
    """
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error

    def _record(db):
        module = artifacts.create_code_module(db, task.project_id, name, file_path, language)
        if contract_id:
            artifacts.link_code_module(db, contract_id, module.id, _endpoint_pairs(endpoints))
        return module

    try:
        module = app.store.write(_record)
    except ValueError as e:
        return {"error": str(e)}
    return {"id": module.id, "name": module.name, "contract_id": contract_id}


@mcp.tool()
def record_test(
    ctx: Context,
    task_id: str,
    name: str,
    file_path: str,
    framework: str = "pytest",
    contract_id: str | None = None,
    endpoints: list[dict] | None = None,
) -> dict:
    """Record a test, optionally as validating endpoints of a contract."""
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error

    def _record(db):
        test = artifacts.create_test(db, task.project_id, name, file_path, framework)
        if contract_id:
            artifacts.link_test(db, contract_id, test.id, _endpoint_pairs(endpoints))
        return test

    try:
        test = app.store.write(_record)
    except ValueError as e:
        return {"error": str(e)}
    return {"id": test.id, "name": test.name, "contract_id": contract_id}


@mcp.tool()
def record_diagnostic(
    ctx: Context,
    task_id: str,
    summary: str,
    root_cause: str = "",
    suggestions: list[str] | None = None,
    failure_id: str | None = None,
) -> dict:
    """Record a diagnosis of a task failure (the latest one unless failure_id is given)."""
    app = _ctx(ctx)
    task, error = _task_or_error(app, task_id)
    if error:
        return error
    if not failure_id:
        failures = app.store.read(artifacts.get_task_failures, task_id)
        if not failures:
            return {"error": f"No failures recorded for task {task_id}"}
        failure_id = max(failures, key=lambda f: f.created_at).id
    try:
        diagnostic = app.store.write(
            artifacts.create_diagnostic, failure_id, summary, root_cause, suggestions
        )
    except ValueError as e:
        return {"error": str(e)}
    return {"id": diagnostic.id, "failure_id": failure_id}


@mcp.tool()
def emit_signal(
    ctx: Context,
    kind: str,
    context: str,
    task_id: str | None = None,
    role: str | None = None,
    stage: str | None = None,
    outcome: str = "success",
    complexity: str = "medium",
    strength: float | None = None,
) -> dict:
    """Leave a guide (what worked) or warn (what to avoid) signal for later workers."""
    app = _ctx(ctx)
    project_id = None
    if task_id:
        task, error = _task_or_error(app, task_id)
        if error:
            return error
        project_id = task.project_id
        stage = stage or task.stage
    try:
        signal = app.signals.emit(
            kind,
            context,
            pattern=SignalPattern(stage=stage, outcome=outcome, role=role, complexity=complexity),
            strength=strength,
            project_id=project_id,
        )
        if task_id:
            app.signals.link_to_task(signal.id, task_id)
    except SignalValidationError as e:
        return {"error": str(e)}
    return _signal_to_dict(signal)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _endpoint_pairs(endpoints: list[dict] | None) -> list[tuple[str, str]]:
    return [(e["path"], e["method"]) for e in endpoints or []]


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "stage": task.stage,
        "priority": task.priority,
        "retry_count": task.retry_count,
        "project": task.project_id,
        "depends_on": task.depends_on,
    }


def _signal_to_dict(signal) -> dict:
    return {
        "id": signal.id,
        "kind": signal.kind,
        "strength": round(signal.strength, 4),
        "context": signal.context,
        "pattern": signal.pattern.to_dict() if signal.pattern else None,
    }
