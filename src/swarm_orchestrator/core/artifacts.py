"""Project-scoped artifact records and their traceability relationships."""

import json
import sqlite3

from swarm_orchestrator.core.tasks import log_event, require_task
from swarm_orchestrator.db import graph
from swarm_orchestrator.db.models import (
    ERROR_KINDS,
    SEVERITIES,
    CodeModule,
    Contract,
    Decision,
    Diagnostic,
    EscalatedError,
    Failure,
    Task,
    ValidationTest,
    Worker,
)

ASSIGNED_TO = "ASSIGNED_TO"
IMPLEMENTS = "IMPLEMENTS"
VALIDATES = "VALIDATES"
DEFINES = "DEFINES"
RELATED_TO = "RELATED_TO"
DIAGNOSES = "DIAGNOSES"

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")


class ContractNotFoundError(ValueError):
    """Raised when a contract lookup fails."""


# ── Workers ──────────────────────────────────────────────────────────────────


def create_worker(
    db: sqlite3.Connection,
    task_id: str,
    role: str,
    session_id: str | None = None,
    workspace: str | None = None,
    branch: str | None = None,
    helper: bool = False,
) -> Worker:
    """Record a spawned worker and assign it to its task."""
    task = require_task(db, task_id)
    worker = Worker(
        id=graph.new_id("worker"),
        project_id=task.project_id,
        task_id=task_id,
        role=role,
        session_id=session_id,
        workspace=workspace,
        branch=branch,
        helper=helper,
    )
    graph.save_record(db, worker)
    graph.create_relationship(db, worker.id, task_id, ASSIGNED_TO, {"role": role})
    log_event(db, task_id, "worker_assigned", None, f"{role} ({session_id})")
    return get_worker(db, worker.id)


def get_worker(db: sqlite3.Connection, worker_id: str) -> Worker | None:
    return graph.get_record(db, Worker, worker_id)


def update_worker(db: sqlite3.Connection, worker_id: str, **fields) -> Worker:
    allowed = {"status", "exit_code", "tokens", "cost", "session_id", "metadata"}
    if not get_worker(db, worker_id):
        raise ValueError(f"Worker not found: {worker_id}")
    updates = {k: v for k, v in fields.items() if k in allowed}
    if updates:
        graph.update_node(db, worker_id, updates)
    return get_worker(db, worker_id)


def list_task_workers(db: sqlite3.Connection, task_id: str) -> list[Worker]:
    """All workers ever assigned to a task, oldest first."""
    rows = graph.related(db, task_id, ASSIGNED_TO, "in", label="Worker")
    return [graph.row_to_record(r) for r in rows]


def list_workers(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[Worker]:
    where = {"status": status} if status else None
    return graph.list_records(db, Worker, project_id=project_id, where=where)


# ── Decisions ────────────────────────────────────────────────────────────────


def create_decision(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    description: str = "",
    rationale: str = "",
    task_id: str | None = None,
    metadata: dict | None = None,
) -> Decision:
    decision = Decision(
        id=graph.new_id("decision"),
        project_id=project_id,
        title=title,
        description=description,
        rationale=rationale,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, decision)
    if task_id:
        require_task(db, task_id)
        graph.create_relationship(db, decision.id, task_id, RELATED_TO)
    return get_decision(db, decision.id)


def get_decision(db: sqlite3.Connection, decision_id: str) -> Decision | None:
    return graph.get_record(db, Decision, decision_id)


def list_decisions(db: sqlite3.Connection, project_id: str) -> list[Decision]:
    return graph.list_records(db, Decision, project_id=project_id)


# ── Contracts ────────────────────────────────────────────────────────────────


def create_contract(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    specification: dict | None = None,
    kind: str = "openapi",
    version: str = "1.0.0",
    description: str = "",
    metadata: dict | None = None,
) -> Contract:
    contract = Contract(
        id=graph.new_id("contract"),
        project_id=project_id,
        name=name,
        kind=kind,
        version=version,
        description=description,
        specification=dict(specification or {}),
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, contract)
    return get_contract(db, contract.id)


def get_contract(db: sqlite3.Connection, contract_id: str) -> Contract | None:
    return graph.get_record(db, Contract, contract_id)


def require_contract(db: sqlite3.Connection, contract_id: str) -> Contract:
    contract = get_contract(db, contract_id)
    if not contract:
        raise ContractNotFoundError(f"Contract not found: {contract_id}")
    return contract


def list_contracts(db: sqlite3.Connection, project_id: str) -> list[Contract]:
    return graph.list_records(db, Contract, project_id=project_id)


def contract_endpoints(contract: Contract) -> list[tuple[str, str]]:
    """(path, METHOD) pairs declared in an OpenAPI-style specification."""
    endpoints = []
    for path, operations in (contract.specification.get("paths") or {}).items():
        for method in operations or {}:
            if method.lower() in HTTP_METHODS:
                endpoints.append((path, method.upper()))
    return endpoints


def link_contract_to_task(db: sqlite3.Connection, contract_id: str, task_id: str):
    """Record that a contract defines (part of) a task's feature."""
    require_contract(db, contract_id)
    require_task(db, task_id)
    graph.create_relationship(db, contract_id, task_id, DEFINES)


# ── Code modules and tests ───────────────────────────────────────────────────


def create_code_module(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    file_path: str = "",
    language: str = "python",
    metadata: dict | None = None,
) -> CodeModule:
    module = CodeModule(
        id=graph.new_id("module"),
        project_id=project_id,
        name=name,
        file_path=file_path,
        language=language,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, module)
    return graph.get_record(db, CodeModule, module.id)


def get_code_module(db: sqlite3.Connection, module_id: str) -> CodeModule | None:
    return graph.get_record(db, CodeModule, module_id)


def create_test(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    file_path: str = "",
    framework: str = "pytest",
    metadata: dict | None = None,
) -> ValidationTest:
    test = ValidationTest(
        id=graph.new_id("test"),
        project_id=project_id,
        name=name,
        file_path=file_path,
        framework=framework,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, test)
    return graph.get_record(db, ValidationTest, test.id)


def get_test(db: sqlite3.Connection, test_id: str) -> ValidationTest | None:
    return graph.get_record(db, ValidationTest, test_id)


def link_code_module(
    db: sqlite3.Connection,
    contract_id: str,
    module_id: str,
    endpoints: list[tuple[str, str]] | None = None,
):
    """Link a module as implementing a contract, optionally for specific endpoints."""
    require_contract(db, contract_id)
    if not get_code_module(db, module_id):
        raise ValueError(f"Code module not found: {module_id}")
    _link_with_endpoints(db, module_id, contract_id, IMPLEMENTS, endpoints)


def link_test(
    db: sqlite3.Connection,
    contract_id: str,
    test_id: str,
    endpoints: list[tuple[str, str]] | None = None,
):
    """Link a test as validating a contract, optionally for specific endpoints."""
    require_contract(db, contract_id)
    if not get_test(db, test_id):
        raise ValueError(f"Test not found: {test_id}")
    _link_with_endpoints(db, test_id, contract_id, VALIDATES, endpoints)


def _link_with_endpoints(db, start_id, contract_id, rel_type, endpoints):
    existing = graph.get_relationship(db, start_id, contract_id, rel_type)
    covered = []
    if existing:
        covered = json.loads(existing["properties"]).get("endpoints", [])
    for path, method in endpoints or []:
        entry = {"path": path, "method": method.upper()}
        if entry not in covered:
            covered.append(entry)
    graph.create_relationship(db, start_id, contract_id, rel_type, {"endpoints": covered})


def get_contract_implementations(db: sqlite3.Connection, contract_id: str) -> list[CodeModule]:
    rows = graph.related(db, contract_id, IMPLEMENTS, "in", label="CodeModule")
    return [graph.row_to_record(r) for r in rows]


def get_contract_tests(db: sqlite3.Connection, contract_id: str) -> list[ValidationTest]:
    rows = graph.related(db, contract_id, VALIDATES, "in", label="Test")
    return [graph.row_to_record(r) for r in rows]


def get_contract_features(db: sqlite3.Connection, contract_id: str) -> list[Task]:
    rows = graph.related(db, contract_id, DEFINES, "out", label="Task")
    return [graph.row_to_record(r) for r in rows]


def contract_coverage(db: sqlite3.Connection, contract_id: str) -> dict:
    """Per-endpoint implementation and test coverage for a contract.

    Run it inside a single read transaction so every query sees the same
    snapshot.
    """
    contract = require_contract(db, contract_id)
    impl_rows = graph.related(db, contract_id, IMPLEMENTS, "in", label="CodeModule")
    test_rows = graph.related(db, contract_id, VALIDATES, "in", label="Test")

    def _covering(rows, path, method):
        ids = []
        for row in rows:
            for ep in json.loads(row["rel_properties"]).get("endpoints", []):
                if ep["path"] == path and ep["method"] == method:
                    ids.append(row["id"])
                    break
        return ids

    endpoints = []
    for path, method in contract_endpoints(contract):
        impl_ids = _covering(impl_rows, path, method)
        test_ids = _covering(test_rows, path, method)
        endpoints.append({
            "path": path,
            "method": method,
            "implementations": impl_ids,
            "tests": test_ids,
            "implemented": bool(impl_ids),
            "tested": bool(test_ids),
        })

    covered = sum(1 for e in endpoints if e["implemented"] and e["tested"])
    return {
        "contract": contract,
        "implementations": [graph.row_to_record(r) for r in impl_rows],
        "tests": [graph.row_to_record(r) for r in test_rows],
        "features": get_contract_features(db, contract_id),
        "endpoints": endpoints,
        "coverage_pct": round(covered / len(endpoints) * 100, 1) if endpoints else 0.0,
    }


# ── Failures, diagnostics and escalations ────────────────────────────────────


def create_failure(
    db: sqlite3.Connection,
    task_id: str,
    kind: str,
    severity: str,
    message: str = "",
    stage: str | None = None,
    output_excerpt: str = "",
    metadata: dict | None = None,
) -> Failure:
    _check_error(kind, severity)
    task = require_task(db, task_id)
    failure = Failure(
        id=graph.new_id("failure"),
        project_id=task.project_id,
        task_id=task_id,
        kind=kind,
        severity=severity,
        message=message,
        stage=stage or task.stage,
        output_excerpt=output_excerpt,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, failure)
    graph.create_relationship(db, failure.id, task_id, RELATED_TO)
    log_event(db, task_id, "failure_recorded", None, f"{kind}/{severity}: {message[:200]}")
    return graph.get_record(db, Failure, failure.id)


def get_failure(db: sqlite3.Connection, failure_id: str) -> Failure | None:
    return graph.get_record(db, Failure, failure_id)


def get_task_failures(db: sqlite3.Connection, task_id: str) -> list[Failure]:
    rows = graph.related(db, task_id, RELATED_TO, "in", label="Failure")
    return [graph.row_to_record(r) for r in rows]


def create_diagnostic(
    db: sqlite3.Connection,
    failure_id: str,
    summary: str,
    root_cause: str = "",
    suggestions: list[str] | None = None,
) -> Diagnostic:
    failure = get_failure(db, failure_id)
    if not failure:
        raise ValueError(f"Failure not found: {failure_id}")
    diagnostic = Diagnostic(
        id=graph.new_id("diagnostic"),
        project_id=failure.project_id,
        failure_id=failure_id,
        summary=summary,
        root_cause=root_cause,
        suggestions=list(suggestions or []),
    )
    graph.save_record(db, diagnostic)
    graph.create_relationship(db, diagnostic.id, failure_id, DIAGNOSES)
    return graph.get_record(db, Diagnostic, diagnostic.id)


def get_failure_diagnostics(db: sqlite3.Connection, failure_id: str) -> list[Diagnostic]:
    rows = graph.related(db, failure_id, DIAGNOSES, "in", label="Diagnostic")
    return [graph.row_to_record(r) for r in rows]


def create_escalation(
    db: sqlite3.Connection,
    task_id: str,
    kind: str,
    severity: str,
    message: str = "",
    stage: str | None = None,
    metadata: dict | None = None,
) -> EscalatedError:
    _check_error(kind, severity)
    task = require_task(db, task_id)
    escalation = EscalatedError(
        id=graph.new_id("escalation"),
        project_id=task.project_id,
        task_id=task_id,
        kind=kind,
        severity=severity,
        message=message,
        stage=stage or task.stage,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, escalation)
    graph.create_relationship(db, escalation.id, task_id, RELATED_TO)
    log_event(db, task_id, "escalated", None, f"{kind}/{severity}")
    return graph.get_record(db, EscalatedError, escalation.id)


def list_escalations(
    db: sqlite3.Connection,
    project_id: str | None = None,
    unresolved_only: bool = True,
) -> list[EscalatedError]:
    where = {"resolved": False} if unresolved_only else None
    return graph.list_records(db, EscalatedError, project_id=project_id, where=where)


def resolve_escalation(db: sqlite3.Connection, escalation_id: str) -> EscalatedError:
    if not graph.get_record(db, EscalatedError, escalation_id):
        raise ValueError(f"Escalation not found: {escalation_id}")
    graph.update_node(db, escalation_id, {"resolved": True})
    return graph.get_record(db, EscalatedError, escalation_id)


def _check_error(kind: str, severity: str):
    if kind not in ERROR_KINDS:
        raise ValueError(f"Invalid error kind: {kind}")
    if severity not in SEVERITIES:
        raise ValueError(f"Invalid severity: {severity}")


# ── Knowledge graph view ─────────────────────────────────────────────────────


def get_knowledge_graph(db: sqlite3.Connection, project_id: str) -> dict:
    """All nodes of a project and the relationships among them."""
    rows = db.execute(
        "SELECT * FROM nodes WHERE project_id = ? ORDER BY label, created_at",
        (project_id,),
    ).fetchall()
    node_ids = {r["id"] for r in rows}
    rels = graph.list_relationships(db, node_ids)
    return {
        "project_id": project_id,
        "nodes": [
            {"id": r["id"], "label": r["label"], "properties": json.loads(r["properties"])}
            for r in rows
        ],
        "relationships": [
            {
                "id": r["id"],
                "start": r["start_id"],
                "end": r["end_id"],
                "type": r["type"],
                "properties": json.loads(r["properties"]),
            }
            for r in rels
        ],
    }
