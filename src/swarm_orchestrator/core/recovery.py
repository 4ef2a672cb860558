"""Failure recording, recovery strategy selection and escalation."""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core.budget import BudgetGuard
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.core.tasks import list_tasks, require_task, update_task, update_task_status
from swarm_orchestrator.core.workers import WorkerHandle, WorkerLifecycleManager
from swarm_orchestrator.core.workflow import LATE_STAGES, WorkflowStateMachine, role_for_stage
from swarm_orchestrator.db.models import (
    COMPLEXITIES,
    ERROR_KINDS,
    SEVERITIES,
    Failure,
    SignalPattern,
)

logger = logging.getLogger(__name__)

SPAWN_HELPER = "spawn_helper"
ESCALATE = "escalate"
PAUSE_DOWNSTREAM = "pause_downstream"

SEVERITY_STRENGTH = {"critical": 1.0, "high": 0.8, "medium": 0.6, "low": 0.4}
HISTORY_IN_CONTEXT = 5
OUTPUT_IN_CONTEXT = 4000


@dataclass
class ErrorContext:
    kind: str
    severity: str
    message: str
    task_id: str
    stage: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    project_id: str | None = None
    output: str | None = None

    def __post_init__(self):
        if self.kind not in ERROR_KINDS:
            raise ValueError(f"Invalid error kind: {self.kind}")
        if self.severity not in SEVERITIES:
            raise ValueError(f"Invalid severity: {self.severity}")

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "task_id": self.task_id,
            "stage": self.stage,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RecoveryResult:
    strategy: str
    success: bool
    escalated: bool = False
    helper_handle: WorkerHandle | None = None
    paused: list[str] = field(default_factory=list)
    message: str = ""


class RecoveryEngine:
    """Turns task failures into helper workers, pauses or escalations.

    Every failure is persisted as a Failure record plus a warn signal before
    any strategy runs.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        signals: SignalCoordinator,
        workflow: WorkflowStateMachine,
        workers: WorkerLifecycleManager,
        notifier=None,
        clock: Callable[[], datetime] | None = None,
        budget: BudgetGuard | None = None,
    ):
        self.store = store
        self.signals = signals
        self.workflow = workflow
        self.workers = workers
        self.notifier = notifier
        self.budget = budget
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._history: dict[str, list[ErrorContext]] = defaultdict(list)
        self._error_counts: dict[str, int] = defaultdict(int)
        self._helpers: dict[str, WorkerHandle] = {}
        self._total = 0
        self._successful = 0
        self._last_failure_at: datetime | None = None

    # ── Entry point ──────────────────────────────────────────────────────────

    def handle_failure(self, error: ErrorContext, force_escalate: bool = False) -> RecoveryResult:
        """Persist a failure, then recover from it.

        `force_escalate` skips the decision table, for tasks that have used up
        their retries.
        """
        task = self.store.read(require_task, error.task_id)
        error.stage = error.stage or task.stage
        error.project_id = error.project_id or task.project_id

        with self._lock:
            self._history[error.task_id].append(error)
            self._error_counts[f"{error.kind}_{error.severity}"] += 1
            self._last_failure_at = self._clock()

        failure = self.store.write(
            artifacts.create_failure,
            error.task_id,
            error.kind,
            error.severity,
            message=error.message,
            stage=error.stage,
            output_excerpt=(error.output or "")[-OUTPUT_IN_CONTEXT:],
        )
        self.signals.emit(
            "warn",
            f"error_{error.kind}_{error.severity}",
            pattern=SignalPattern(
                stage=error.stage,
                outcome="failure",
                role=role_for_stage(error.stage),
                complexity=task_complexity(task.metadata),
                error_types=[error.kind],
            ),
            strength=SEVERITY_STRENGTH[error.severity],
            project_id=error.project_id,
            metadata={"task_id": error.task_id, "failure_id": failure.id},
        )
        self.store.write(update_task_status, error.task_id, "failed")
        logger.warning(
            "Task %s failed at %s: %s/%s %s",
            error.task_id, error.stage, error.kind, error.severity, error.message,
        )

        paused = []
        if error.kind == "critique_failure":
            paused = self.pause_downstream(error.project_id, error.severity, blocked_by=error.task_id)

        strategy, role = (ESCALATE, None) if force_escalate else self.decide(error)
        result = self.execute(strategy, error, role=role, failure=failure)
        result.paused = paused + result.paused

        outcome = "success" if result.success else "failed"
        self.signals.emit(
            "warn",
            f"recovery_{strategy}_{outcome}",
            pattern=SignalPattern(
                stage=error.stage,
                outcome="success" if result.success else "failure",
                role=role,
                error_types=[error.kind],
            ),
            project_id=error.project_id,
            metadata={"task_id": error.task_id},
        )
        with self._lock:
            self._total += 1
            if result.success:
                self._successful += 1
        return result

    # ── Strategy selection ───────────────────────────────────────────────────

    def decide(self, error: ErrorContext) -> tuple[str, str | None]:
        """Pick a recovery strategy and, for helpers, the helper role."""
        if error.severity == "critical" and error.kind == "system_failure":
            return SPAWN_HELPER, "debugger"
        if error.kind == "workflow_step_error" and self.workflow.is_recovery_enabled(
            error.task_id, error.stage
        ):
            return SPAWN_HELPER, "code_savant"
        if error.kind == "impasse":
            return SPAWN_HELPER, "code_savant"
        return ESCALATE, None

    def execute(
        self,
        strategy: str,
        error: ErrorContext,
        role: str | None = None,
        failure: Failure | None = None,
    ) -> RecoveryResult:
        try:
            if strategy == SPAWN_HELPER:
                return self._spawn_helper(error, role or "code_savant", failure)
            if strategy == ESCALATE:
                return self._escalate(error)
            if strategy == PAUSE_DOWNSTREAM:
                project_id = error.project_id or self.store.read(require_task, error.task_id).project_id
                paused = self.pause_downstream(project_id, error.severity, blocked_by=error.task_id)
                return RecoveryResult(strategy, success=True, paused=paused)
            raise ValueError(f"Unknown recovery strategy: {strategy}")
        except Exception as e:
            logger.exception("Recovery %s failed for task %s", strategy, error.task_id)
            try:
                self._escalate(error, reason=f"{strategy} failed: {e}")
            except Exception:
                logger.exception("Could not record escalation for task %s", error.task_id)
            return RecoveryResult(strategy, success=False, escalated=True, message=str(e))

    def _spawn_helper(
        self,
        error: ErrorContext,
        role: str,
        failure: Failure | None,
    ) -> RecoveryResult:
        task = self.store.read(require_task, error.task_id)
        if self.budget is not None:
            status = self.budget.check(task.project_id)
            if not status.can_spawn:
                logger.warning(
                    "Budget %s for %s; not spawning %s for task %s",
                    status.state, task.project_id, role, task.id,
                )
                return self._escalate(
                    error, reason=f"{error.message} (budget {status.state}, no {role} helper)"
                )

        context = {
            "failure": {
                "id": failure.id if failure else None,
                **error.as_dict(),
            },
            "previous_output": (error.output or "")[-OUTPUT_IN_CONTEXT:],
            "error_history": [e.as_dict() for e in self.error_history(error.task_id)[-HISTORY_IN_CONTEXT:]],
            "instructions": (
                f"The {task.stage} stage of this task failed. Diagnose the failure, "
                "fix what you can, and record a diagnostic with `record_diagnostic`."
            ),
        }
        handle = self.workers.spawn(task, role, context=context, helper=True)
        self.store.write(update_task_status, task.id, "impasse")
        self.register_helper(task.id, handle)
        logger.info("Spawned %s helper for task %s", role, task.id)
        return RecoveryResult(
            SPAWN_HELPER,
            success=True,
            helper_handle=handle,
            message=f"{role} helper {handle.session_id}",
        )

    def _escalate(self, error: ErrorContext, reason: str | None = None) -> RecoveryResult:
        escalation = self.store.write(
            artifacts.create_escalation,
            error.task_id,
            error.kind,
            error.severity,
            message=reason or error.message,
            stage=error.stage,
        )
        try:
            self.workers.cleanup_task(error.task_id)
        except Exception:
            logger.exception("Could not tear down resources for task %s", error.task_id)
        self.release_helper(error.task_id)
        self.store.write(update_task_status, error.task_id, "failed")
        logger.error("Escalated task %s: %s", error.task_id, escalation.message)

        if self.notifier is not None:
            task = self.store.read(require_task, error.task_id)
            try:
                self.notifier.notify(escalation, task)
            except Exception:
                logger.exception("Escalation notification failed for task %s", error.task_id)

        return RecoveryResult(ESCALATE, success=False, escalated=True, message=escalation.id)

    # ── Pausing ──────────────────────────────────────────────────────────────

    def pause_downstream(
        self,
        project_id: str,
        severity: str,
        blocked_by: str | None = None,
    ) -> list[str]:
        """Pause pending work after a quality failure, scaled by severity.

        Paused tasks remember `blocked_by` so they resume once that task
        succeeds.
        """
        pending = self.store.read(list_tasks, project_id, status="pending")
        if severity in ("high", "critical"):
            targets = pending
        elif severity == "medium":
            targets = [t for t in pending if t.stage in LATE_STAGES]
        else:
            targets = []

        paused = []
        for task in targets:
            if blocked_by:
                self.store.write(update_task, task.id, metadata={"paused_by": blocked_by})
            self.store.write(update_task_status, task.id, "paused")
            paused.append(task.id)

        if paused:
            self.signals.emit(
                "warn",
                f"pause_downstream_{severity}",
                strength=0.9 if severity in ("high", "critical") else 0.7,
                project_id=project_id,
                metadata={"paused": paused, "blocked_by": blocked_by},
            )
            logger.warning("Paused %d pending task(s) in %s", len(paused), project_id)
        return paused

    def resume_paused(self, project_id: str, blocked_by: str | None = None) -> list[str]:
        """Return paused tasks to pending, only those `blocked_by` a task if given."""
        resumed = []
        for task in self.store.read(list_tasks, project_id, status="paused"):
            if blocked_by and task.metadata.get("paused_by") != blocked_by:
                continue
            self.store.write(update_task, task.id, drop_metadata=["paused_by"])
            self.store.write(update_task_status, task.id, "pending")
            resumed.append(task.id)
        if resumed:
            logger.info("Resumed %d paused task(s) in %s", len(resumed), project_id)
        return resumed

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def register_helper(self, task_id: str, handle: WorkerHandle):
        with self._lock:
            self._helpers[task_id] = handle

    def release_helper(self, task_id: str) -> WorkerHandle | None:
        with self._lock:
            return self._helpers.pop(task_id, None)

    def active_helpers(self) -> dict[str, WorkerHandle]:
        with self._lock:
            return dict(self._helpers)

    def error_history(self, task_id: str) -> list[ErrorContext]:
        with self._lock:
            return list(self._history.get(task_id, []))

    def statistics(self) -> dict:
        with self._lock:
            return {
                "total_recoveries": self._total,
                "successful_recoveries": self._successful,
                "success_rate": self._successful / self._total if self._total else 0.0,
                "active_helpers": len(self._helpers),
                "error_counts": dict(self._error_counts),
                "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
            }


def task_complexity(metadata: dict) -> str:
    """A task's declared complexity, or "medium" when missing or unknown."""
    value = metadata.get("complexity")
    return value if value in COMPLEXITIES else "medium"
