from unittest.mock import MagicMock

import pytest

from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.budget import BudgetGuard
from swarm_orchestrator.core.recovery import (
    ESCALATE,
    PAUSE_DOWNSTREAM,
    SPAWN_HELPER,
    ErrorContext,
    RecoveryEngine,
)
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.core.workers import SpawnError, WorkerHandle, WorkerLifecycleManager
from swarm_orchestrator.core.workflow import WorkflowStateMachine


def make_handle(task_id, role="code_savant"):
    return WorkerHandle(
        worker_id="worker-1",
        task_id=task_id,
        project_id="demo",
        role=role,
        key=f"{task_id}--{role}",
        session_id=f"swarm-{role}-{task_id}-1",
        workspace=f"/tmp/{task_id}--{role}",
        branch=f"task/{task_id}--{role}",
        output_file="/tmp/out.log",
        helper=True,
    )


@pytest.fixture
def workers():
    mock = MagicMock(spec=WorkerLifecycleManager)
    mock.spawn.side_effect = lambda task, role, context=None, helper=False: make_handle(task.id, role)
    return mock


@pytest.fixture
def workflow():
    return WorkflowStateMachine()


@pytest.fixture
def signals(store):
    return SignalCoordinator(store)


@pytest.fixture
def engine(store, signals, workflow, workers, project):
    return RecoveryEngine(store, signals, workflow, workers)


@pytest.fixture
def task(store, project):
    return store.write(tasks_mod.create_task, "Implement login", "demo")


class TestErrorContext:
    def test_invalid_kind(self):
        with pytest.raises(ValueError, match="Invalid error kind"):
            ErrorContext("oops", "high", "msg", "t1")

    def test_invalid_severity(self):
        with pytest.raises(ValueError, match="Invalid severity"):
            ErrorContext("timeout", "urgent", "msg", "t1")


class TestDecide:
    @pytest.mark.parametrize("kind,severity,expected", [
        ("system_failure", "critical", (SPAWN_HELPER, "debugger")),
        ("system_failure", "high", (ESCALATE, None)),
        ("workflow_step_error", "medium", (SPAWN_HELPER, "code_savant")),
        ("impasse", "low", (SPAWN_HELPER, "code_savant")),
        ("timeout", "high", (ESCALATE, None)),
        ("critique_failure", "high", (ESCALATE, None)),
    ])
    def test_decision_table(self, engine, kind, severity, expected):
        assert engine.decide(ErrorContext(kind, severity, "", "t1", stage="implement_code")) == expected

    def test_step_error_without_recovery_escalates(self, engine, workflow):
        workflow.initialize("t1", "implement_code")
        workflow.set_recovery_enabled("t1", False)
        error = ErrorContext("workflow_step_error", "medium", "", "t1")
        assert engine.decide(error) == (ESCALATE, None)

    def test_critical_system_failure_ignores_recovery_flag(self, engine, workflow):
        workflow.initialize("t3", "design_architecture")
        workflow.set_recovery_enabled("t3", False)
        error = ErrorContext("system_failure", "critical", "", "t3")
        assert engine.decide(error) == (SPAWN_HELPER, "debugger")


class TestHandleFailure:
    def test_critical_failure_spawns_debugger(self, engine, store, signals, workers, task):
        error = ErrorContext("system_failure", "critical", "worker crashed", task.id, output="Traceback ...")
        result = engine.handle_failure(error)

        assert result.strategy == SPAWN_HELPER
        assert result.success
        assert not result.escalated
        assert result.helper_handle.role == "debugger"
        assert engine.active_helpers()[task.id] is result.helper_handle

        spawned_task, role = workers.spawn.call_args[0]
        assert role == "debugger"
        context = workers.spawn.call_args[1]["context"]
        assert context["failure"]["kind"] == "system_failure"
        assert context["previous_output"] == "Traceback ..."
        assert workers.spawn.call_args[1]["helper"] is True

        assert store.read(tasks_mod.get_task, task.id).status == "impasse"
        failures = store.read(artifacts.get_task_failures, task.id)
        assert [(f.kind, f.severity, f.stage) for f in failures] == [
            ("system_failure", "critical", "implement_code")
        ]
        warn_contexts = [s.context for s in signals.query(kind="warn")]
        assert "error_system_failure_critical" in warn_contexts
        assert "recovery_spawn_helper_success" in warn_contexts

    def test_budget_warning_blocks_helper(self, store, signals, workflow, workers, task):
        store.write(projects_mod.update_project, "demo", max_tokens=100)
        store.write(projects_mod.record_usage, "demo", 95)
        engine = RecoveryEngine(store, signals, workflow, workers, budget=BudgetGuard(store))

        result = engine.handle_failure(ErrorContext("system_failure", "critical", "worker crashed", task.id))
        assert result.escalated
        workers.spawn.assert_not_called()
        assert engine.active_helpers() == {}
        escalation = store.read(artifacts.list_escalations, "demo")[0]
        assert escalation.message == "worker crashed (budget warning, no debugger helper)"

    def test_failure_signal_carries_pattern(self, engine, signals, task):
        engine.handle_failure(ErrorContext("workflow_step_error", "high", "exit 1", task.id))
        signal = next(s for s in signals.query() if s.context == "error_workflow_step_error_high")
        assert signal.strength == 0.8
        assert signal.pattern.role == "coder"
        assert signal.pattern.outcome == "failure"
        assert signal.pattern.error_types == ["workflow_step_error"]

    def test_timeout_escalates(self, engine, store, workers, task):
        result = engine.handle_failure(ErrorContext("timeout", "high", "no output for an hour", task.id))

        assert result.strategy == ESCALATE
        assert not result.success
        assert result.escalated
        workers.cleanup_task.assert_called_once_with(task.id)
        assert store.read(tasks_mod.get_task, task.id).status == "failed"
        escalations = store.read(artifacts.list_escalations, "demo")
        assert [(e.task_id, e.kind) for e in escalations] == [(task.id, "timeout")]

    def test_force_escalate(self, engine, workers, task):
        result = engine.handle_failure(
            ErrorContext("workflow_step_error", "medium", "again", task.id), force_escalate=True
        )
        assert result.escalated
        workers.spawn.assert_not_called()

    def test_spawn_failure_escalates(self, engine, store, workers, task):
        workers.spawn.side_effect = SpawnError("no claude")
        result = engine.handle_failure(ErrorContext("impasse", "medium", "stuck", task.id))

        assert result.strategy == SPAWN_HELPER
        assert not result.success
        assert result.escalated
        escalation = store.read(artifacts.list_escalations, "demo")[0]
        assert "no claude" in escalation.message
        assert store.read(tasks_mod.get_task, task.id).status == "failed"

    def test_cleanup_error_does_not_block_escalation(self, engine, store, workers, task):
        workers.cleanup_task.side_effect = RuntimeError("git exploded")
        result = engine.handle_failure(ErrorContext("timeout", "high", "", task.id))
        assert result.escalated
        assert len(store.read(artifacts.list_escalations, "demo")) == 1

    def test_notifier_called_and_failure_logged(self, store, signals, workflow, workers, task, caplog):
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("slack down")
        engine = RecoveryEngine(store, signals, workflow, workers, notifier=notifier)

        result = engine.handle_failure(ErrorContext("timeout", "high", "", task.id))
        assert result.escalated
        escalation, notified_task = notifier.notify.call_args[0]
        assert escalation.task_id == task.id
        assert notified_task.id == task.id
        assert "Escalation notification failed" in caplog.text

    def test_statistics(self, engine, task):
        engine.handle_failure(ErrorContext("impasse", "medium", "", task.id))
        engine.handle_failure(ErrorContext("timeout", "high", "", task.id))
        stats = engine.statistics()
        assert stats["total_recoveries"] == 2
        assert stats["successful_recoveries"] == 1
        assert stats["success_rate"] == 0.5
        assert stats["error_counts"] == {"impasse_medium": 1, "timeout_high": 1}
        assert stats["last_failure_at"] is not None
        assert len(engine.error_history(task.id)) == 2

    def test_escalation_releases_helper(self, engine, task):
        engine.handle_failure(ErrorContext("impasse", "medium", "", task.id))
        assert task.id in engine.active_helpers()
        engine.handle_failure(ErrorContext("timeout", "high", "", task.id))
        assert engine.active_helpers() == {}

    def test_unknown_complexity_tolerated(self, engine, store, project):
        odd = store.write(tasks_mod.create_task, "Odd", "demo", metadata={"complexity": "extreme"})
        result = engine.handle_failure(ErrorContext("timeout", "low", "", odd.id))
        assert result.escalated


class TestPauseDownstream:
    @pytest.fixture
    def pipeline(self, store, project):
        critic = store.write(tasks_mod.create_task, "Review requirements", "demo", stage="prototype_logic")
        early = store.write(tasks_mod.create_task, "Requirements for billing", "demo")
        late = store.write(tasks_mod.create_task, "Implement billing", "demo")
        tests = store.write(tasks_mod.create_task, "Billing tests", "demo")
        return critic, early, late, tests

    def test_medium_pauses_late_stages_only(self, engine, store, signals, pipeline):
        critic, early, late, tests = pipeline
        result = engine.handle_failure(ErrorContext("critique_failure", "medium", "vague", critic.id))

        assert sorted(result.paused) == sorted([late.id, tests.id])
        assert store.read(tasks_mod.get_task, early.id).status == "pending"
        assert store.read(tasks_mod.get_task, late.id).status == "paused"
        pause_signal = next(s for s in signals.query() if s.context == "pause_downstream_medium")
        assert pause_signal.strength == 0.7

    def test_high_pauses_everything_pending(self, engine, store, signals, pipeline):
        critic, early, late, tests = pipeline
        result = engine.handle_failure(ErrorContext("critique_failure", "high", "wrong", critic.id))
        assert sorted(result.paused) == sorted([early.id, late.id, tests.id])
        pause_signal = next(s for s in signals.query() if s.context == "pause_downstream_high")
        assert pause_signal.strength == 0.9

    def test_low_pauses_nothing(self, engine, signals, pipeline):
        critic = pipeline[0]
        result = engine.handle_failure(ErrorContext("critique_failure", "low", "nit", critic.id))
        assert result.paused == []
        assert not any(s.context.startswith("pause_downstream") for s in signals.query())

    def test_pause_strategy_and_resume(self, engine, store, pipeline):
        critic = pipeline[0]
        result = engine.execute(
            PAUSE_DOWNSTREAM, ErrorContext("critique_failure", "critical", "", critic.id, project_id="demo")
        )
        assert result.success
        assert len(result.paused) == 4

        resumed = engine.resume_paused("demo")
        assert sorted(resumed) == sorted(result.paused)
        assert store.read(tasks_mod.get_ready_tasks, "demo")

    def test_resume_only_work_blocked_by_task(self, engine, store, pipeline):
        critic, early, late, tests = pipeline
        engine.handle_failure(ErrorContext("critique_failure", "medium", "vague", critic.id))
        assert store.read(tasks_mod.get_task, late.id).metadata["paused_by"] == critic.id

        assert engine.resume_paused("demo", blocked_by="someone-else") == []
        resumed = engine.resume_paused("demo", blocked_by=critic.id)
        assert sorted(resumed) == sorted([late.id, tests.id])
        assert "paused_by" not in store.read(tasks_mod.get_task, late.id).metadata

    def test_unknown_strategy_escalates(self, engine, store, pipeline):
        critic = pipeline[0]
        result = engine.execute("retry_forever", ErrorContext("timeout", "low", "", critic.id))
        assert result.escalated
        assert not result.success
