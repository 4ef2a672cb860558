"""MCP tool tests. Tools are plain functions; the context is mocked."""

from unittest.mock import MagicMock

import pytest

from swarm_orchestrator.config import Config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.db.models import SignalPattern
from swarm_orchestrator.mcp.server import (
    AppContext,
    emit_signal,
    get_guidance,
    get_task,
    record_code_module,
    record_contract,
    record_decision,
    record_diagnostic,
    record_test,
    report_critique_failure,
    report_impasse,
)

USERS_API = {
    "openapi": "3.0.0",
    "paths": {
        "/users": {"get": {}, "post": {}},
        "/users/{id}": {"get": {}},
    },
}


@pytest.fixture
def app(store, project):
    return AppContext(store=store, signals=SignalCoordinator(store), config=Config())


@pytest.fixture
def ctx(app):
    mock = MagicMock()
    mock.request_context.lifespan_context = app
    return mock


@pytest.fixture
def task(store, project):
    return store.write(tasks_mod.create_task, "Implement users API", "demo", description="CRUD for users")


class TestContextTools:
    def test_get_task(self, ctx, store, task):
        dep = store.write(tasks_mod.create_task, "Users API contract", "demo")
        store.write(tasks_mod.update_task, dep.id, metadata={"result_summary": "openapi.yaml written"})
        store.write(tasks_mod.add_dependency, task.id, dep.id)

        result = get_task(ctx, task.id)
        assert result["id"] == task.id
        assert result["stage"] == "implement_code"
        assert result["expected_outputs"] == ["source code"]
        assert result["guidance"]
        assert result["dependencies"] == [{
            "id": dep.id,
            "title": "Users API contract",
            "status": "pending",
            "result_summary": "openapi.yaml written",
        }]

    def test_get_missing_task(self, ctx):
        assert get_task(ctx, "ghost") == {"error": "Task not found: ghost"}

    def test_get_guidance(self, ctx, app):
        app.signals.emit("guide", "stage:implement_code small commits",
                         pattern=SignalPattern(stage="implement_code", role="coder"))
        app.signals.emit("warn", "mocking the db hid a bug",
                         pattern=SignalPattern(outcome="failure", role="tester"))

        result = get_guidance(ctx, "coder")
        assert [g["context"] for g in result["guides"]] == ["stage:implement_code small commits"]
        assert result["warnings"] == []
        assert result["guides"][0]["pattern"]["role"] == "coder"

        by_stage = get_guidance(ctx, "tester", stage="implement_code")
        assert len(by_stage["guides"]) == 1
        assert len(by_stage["warnings"]) == 1


class TestReportTools:
    def test_report_impasse(self, ctx, store, task):
        result = report_impasse(ctx, task.id, "Database unreachable", attempted=["retry", "new creds"])
        assert result == {"task_id": task.id, "recorded": "impasse_report"}
        report = store.read(tasks_mod.get_task, task.id).metadata["impasse_report"]
        assert report["description"] == "Database unreachable"
        assert report["attempted"] == ["retry", "new creds"]
        assert report["severity"] == "medium"
        assert "reported_at" in report

    def test_report_critique_failure(self, ctx, store, task):
        result = report_critique_failure(
            ctx, task.id, "Contract missing auth", "high", issues=["no 401"], upstream_task_id="contract"
        )
        assert result == {"task_id": task.id, "recorded": "critique_report"}
        report = store.read(tasks_mod.get_task, task.id).metadata["critique_report"]
        assert report["severity"] == "high"
        assert report["upstream_task_id"] == "contract"

    def test_invalid_severity(self, ctx, store, task):
        result = report_critique_failure(ctx, task.id, "meh", "urgent")
        assert result == {"error": "Invalid severity: urgent"}
        assert "critique_report" not in store.read(tasks_mod.get_task, task.id).metadata

    def test_report_on_missing_task(self, ctx):
        assert "error" in report_impasse(ctx, "ghost", "stuck")


class TestArtifactTools:
    def test_record_decision(self, ctx, store, task):
        result = record_decision(ctx, task.id, "Use Postgres", "needs JSONB")
        decision = store.read(artifacts.get_decision, result["id"])
        assert decision.title == "Use Postgres"
        assert decision.rationale == "needs JSONB"
        assert decision.project_id == "demo"

    def test_contract_coverage_flow(self, ctx, store, task):
        contract = record_contract(ctx, task.id, "Users API", USERS_API)
        assert sorted((e["path"], e["method"]) for e in contract["endpoints"]) == [
            ("/users", "GET"), ("/users", "POST"), ("/users/{id}", "GET"),
        ]

        module = record_code_module(
            ctx, task.id, "users", "app/users.py",
            contract_id=contract["id"],
            endpoints=[{"path": "/users", "method": "GET"}, {"path": "/users", "method": "POST"}],
        )
        test = record_test(
            ctx, task.id, "test_users", "tests/test_users.py",
            contract_id=contract["id"],
            endpoints=[{"path": "/users", "method": "GET"}],
        )
        assert module["contract_id"] == contract["id"]
        assert test["contract_id"] == contract["id"]

        coverage = store.contract_coverage(contract["id"])
        assert coverage["coverage_pct"] == pytest.approx(33.3)
        assert [f.id for f in coverage["features"]] == [task.id]

    def test_record_against_unknown_contract(self, ctx, task):
        result = record_code_module(ctx, task.id, "users", "app/users.py", contract_id="contract-nope")
        assert "Contract not found" in result["error"]

    def test_record_diagnostic_latest_failure(self, ctx, store, task):
        store.write(artifacts.create_failure, task.id, "workflow_step_error", "medium", "exit 1")
        latest = store.write(artifacts.create_failure, task.id, "timeout", "high", "hung")

        result = record_diagnostic(ctx, task.id, "Deadlock in pool", "two locks", ["order locks"])
        assert result["failure_id"] == latest.id
        diagnostics = store.read(artifacts.get_failure_diagnostics, latest.id)
        assert diagnostics[0].suggestions == ["order locks"]

    def test_record_diagnostic_without_failures(self, ctx, task):
        assert record_diagnostic(ctx, task.id, "nothing")["error"].startswith("No failures")

    def test_emit_signal_for_task(self, ctx, app, task):
        result = emit_signal(ctx, "warn", "flaky fixture", task_id=task.id, role="tester", outcome="failure")
        assert result["kind"] == "warn"
        assert result["strength"] == 0.7
        assert result["pattern"]["stage"] == "implement_code"
        graph = app.store.knowledge_graph("demo")
        assert any(n["id"] == result["id"] for n in graph["nodes"])

    def test_emit_invalid_signal(self, ctx):
        assert "error" in emit_signal(ctx, "shout", "loud")
        assert "error" in emit_signal(ctx, "guide", "too strong", strength=2.0)
