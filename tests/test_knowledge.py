import pytest

from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import tasks as tasks_mod

USERS_API = {
    "openapi": "3.0.0",
    "paths": {
        "/users": {"get": {}, "post": {}, "parameters": []},
        "/users/{id}": {"get": {}},
    },
}


@pytest.fixture
def task(store, project):
    return store.write(tasks_mod.create_task, "User API", "demo")


@pytest.fixture
def contract(store, task):
    c = store.write(artifacts.create_contract, "demo", "users", USERS_API)
    store.write(artifacts.link_contract_to_task, c.id, task.id)
    return c


class TestContracts:
    def test_endpoints(self, contract):
        assert artifacts.contract_endpoints(contract) == [
            ("/users", "GET"), ("/users", "POST"), ("/users/{id}", "GET"),
        ]

    def test_coverage(self, store, task, contract):
        module = store.write(artifacts.create_code_module, "demo", "users", "app/users.py")
        store.write(artifacts.link_code_module, contract.id, module.id,
                    [("/users", "get"), ("/users", "POST")])
        test = store.write(artifacts.create_test, "demo", "test_users", "tests/test_users.py")
        store.write(artifacts.link_test, contract.id, test.id, [("/users", "GET")])

        coverage = store.contract_coverage(contract.id)
        assert coverage["contract"].id == contract.id
        assert [m.id for m in coverage["implementations"]] == [module.id]
        assert [t.id for t in coverage["tests"]] == [test.id]
        assert [t.id for t in coverage["features"]] == [task.id]

        by_endpoint = {(e["path"], e["method"]): e for e in coverage["endpoints"]}
        assert by_endpoint[("/users", "GET")]["implemented"]
        assert by_endpoint[("/users", "GET")]["tested"]
        assert by_endpoint[("/users", "POST")]["implemented"]
        assert not by_endpoint[("/users", "POST")]["tested"]
        assert not by_endpoint[("/users/{id}", "GET")]["implemented"]
        assert coverage["coverage_pct"] == 33.3

    def test_contract_relationships(self, store, task, contract):
        module = store.write(artifacts.create_code_module, "demo", "users", "app/users.py")
        store.write(artifacts.link_code_module, contract.id, module.id)
        test = store.write(artifacts.create_test, "demo", "test_users", "tests/test_users.py", "unittest")
        store.write(artifacts.link_test, contract.id, test.id)

        assert [m.file_path for m in store.read(artifacts.get_contract_implementations, contract.id)] == [
            "app/users.py"
        ]
        assert [t.framework for t in store.read(artifacts.get_contract_tests, contract.id)] == ["unittest"]
        assert [t.id for t in store.read(artifacts.get_contract_features, contract.id)] == [task.id]

    def test_relinking_merges_endpoints(self, store, contract):
        module = store.write(artifacts.create_code_module, "demo", "users", "app/users.py")
        store.write(artifacts.link_code_module, contract.id, module.id, [("/users", "GET")])
        store.write(artifacts.link_code_module, contract.id, module.id,
                    [("/users", "GET"), ("/users/{id}", "GET")])
        coverage = store.contract_coverage(contract.id)
        implemented = [e for e in coverage["endpoints"] if e["implemented"]]
        assert len(implemented) == 2

    def test_empty_contract_has_zero_coverage(self, store):
        c = store.write(artifacts.create_contract, "demo", "empty")
        assert store.contract_coverage(c.id)["coverage_pct"] == 0.0

    def test_missing_contract(self, store, project):
        with pytest.raises(artifacts.ContractNotFoundError):
            store.contract_coverage("contract-nope")

    def test_link_unknown_module(self, store, contract):
        with pytest.raises(ValueError, match="Code module not found"):
            store.write(artifacts.link_code_module, contract.id, "module-nope")


class TestFailures:
    def test_failure_and_diagnostic(self, store, task):
        failure = store.write(
            artifacts.create_failure, task.id, "workflow_step_error", "medium", "exit 1"
        )
        assert failure.stage == task.stage
        assert failure.project_id == "demo"
        store.write(artifacts.create_diagnostic, failure.id, "Missing env var", "config",
                    ["set DATABASE_URL"])

        assert [f.id for f in store.read(artifacts.get_task_failures, task.id)] == [failure.id]
        diagnostics = store.read(artifacts.get_failure_diagnostics, failure.id)
        assert diagnostics[0].suggestions == ["set DATABASE_URL"]
        events = store.read(tasks_mod.get_task_events, task.id)
        assert events[-1].event_type == "failure_recorded"

    def test_invalid_kind(self, store, task):
        with pytest.raises(ValueError, match="Invalid error kind"):
            store.write(artifacts.create_failure, task.id, "oops", "medium")

    def test_invalid_severity(self, store, task):
        with pytest.raises(ValueError, match="Invalid severity"):
            store.write(artifacts.create_escalation, task.id, "timeout", "urgent")

    def test_escalations(self, store, task):
        esc = store.write(artifacts.create_escalation, task.id, "timeout", "high", "stuck")
        assert [e.id for e in store.read(artifacts.list_escalations, "demo")] == [esc.id]

        store.write(artifacts.resolve_escalation, esc.id)
        assert store.read(artifacts.list_escalations, "demo") == []
        assert len(store.read(artifacts.list_escalations, "demo", unresolved_only=False)) == 1


class TestWorkers:
    def test_worker_assignment(self, store, task):
        worker = store.write(artifacts.create_worker, task.id, "coder", session_id="swarm-x")
        assert worker.status == "running"
        store.write(artifacts.update_worker, worker.id, status="completed", exit_code=0, tokens=10)

        workers = store.read(artifacts.list_task_workers, task.id)
        assert workers[0].status == "completed"
        assert workers[0].tokens == 10
        assert store.read(artifacts.list_workers, "demo", status="completed")[0].id == worker.id


class TestKnowledgeStore:
    def test_knowledge_graph(self, store, task, contract):
        decision = store.write(artifacts.create_decision, "demo", "Use JWT", rationale="stateless",
                               task_id=task.id)
        graph = store.knowledge_graph("demo")
        ids = {n["id"] for n in graph["nodes"]}
        assert {"demo", task.id, contract.id, decision.id} <= ids
        types = {(r["start"], r["end"], r["type"]) for r in graph["relationships"]}
        assert (contract.id, task.id, "DEFINES") in types
        assert (decision.id, task.id, "RELATED_TO") in types

    def test_counts(self, store, task, contract):
        counts = store.counts()
        assert counts["nodes"] == 3
        assert counts["relationships"] == 1

    def test_failed_write_leaves_no_trace(self, store, project):
        def work(db):
            tasks_mod.create_task(db, "Doomed", "demo")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            store.write(work)
        assert store.read(tasks_mod.get_task, "doomed") is None

    def test_health_after_close(self, store):
        assert store.health_check()
        store.close()
        assert not store.health_check()
        assert store.closed
