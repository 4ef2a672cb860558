"""Scheduling loop: admits ready tasks, harvests finished workers, drives recovery."""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from swarm_orchestrator.config import Config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core.budget import BudgetGuard
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.recovery import ErrorContext, RecoveryEngine, task_complexity
from swarm_orchestrator.core.sessions import SessionError
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.core.tasks import (
    get_ready_tasks,
    list_tasks,
    require_task,
    update_task,
    update_task_status,
)
from swarm_orchestrator.core.workers import (
    SpawnError,
    WorkerHandle,
    WorkerLifecycleManager,
    WorkerResult,
)
from swarm_orchestrator.core.workflow import WorkflowStateMachine
from swarm_orchestrator.db.models import SEVERITIES, SignalPattern
from swarm_orchestrator.integrations.git import GitError
from swarm_orchestrator.integrations.slack import EscalationNotifier

logger = logging.getLogger(__name__)

REPORT_KINDS = {"impasse_report": "impasse", "critique_report": "critique_failure"}


class MaintenanceTimer:
    """Background thread that decays signals on a fixed interval."""

    def __init__(self, signals: SignalCoordinator, interval: float = 3600.0):
        self.signals = signals
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="signal-decay", daemon=True)
        self._thread.start()
        logger.info("Maintenance timer started (every %.0fs)", self.interval)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Maintenance timer stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.signals.decay()
            except Exception:
                logger.exception("Signal decay failed")


class Scheduler:
    """Cooperative scheduler for one orchestrator process.

    The loop never blocks on a worker: each tick polls exit codes, acts on
    finished workers and reports, then admits new work up to the concurrency
    limit.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        workflow: WorkflowStateMachine,
        signals: SignalCoordinator,
        workers: WorkerLifecycleManager,
        recovery: RecoveryEngine,
        budget: BudgetGuard,
        config: Config,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.workflow = workflow
        self.signals = signals
        self.workers = workers
        self.recovery = recovery
        self.budget = budget
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._shutdown = threading.Event()
        self._last_decay = self._clock()
        self.budget_exhausted = False
        self.timer: MaintenanceTimer | None = None

    # ── Admission ────────────────────────────────────────────────────────────

    def ready_tasks(self, project_id: str):
        if self.budget_exhausted or self.budget.check(project_id).state == "exceeded":
            return []
        return self.store.read(get_ready_tasks, project_id)

    def in_flight(self, project_id: str) -> list[WorkerHandle]:
        return [h for h in self.workers.active_handles() if h.project_id == project_id]

    # ── Loop ─────────────────────────────────────────────────────────────────

    def tick(self, project_id: str) -> dict:
        """One pass of the scheduling loop. Returns what happened."""
        summary = {
            "completed": [],
            "advanced": [],
            "failed": [],
            "spawned": [],
            "reports": [],
            "resumed": [],
            "budget": None,
            "decay": None,
        }
        self._harvest(project_id, summary)
        self._collect_reports(project_id, summary)
        if not self._shutdown.is_set() and not self.budget_exhausted:
            self._admit(project_id, summary)

        now = self._clock()
        if self.timer is None and (now - self._last_decay).total_seconds() >= self.config.decay_interval:
            summary["decay"] = self.signals.decay()
            self._last_decay = now
        return summary

    def run(self, project_id: str) -> dict:
        """Run until the project has no more work, the budget runs out or shutdown."""
        resumed = self.resume(project_id)
        totals = {"completed": [], "advanced": [], "failed": [], "spawned": [], "reports": []}
        ticks = 0
        logger.info("Scheduler started for %s (%d resumed)", project_id, len(resumed))

        while not self._shutdown.is_set():
            summary = self.tick(project_id)
            ticks += 1
            for key in totals:
                totals[key].extend(summary[key])
            if self.budget_exhausted:
                break
            if not self.in_flight(project_id):
                if not self.ready_tasks(project_id) or not self.budget.check(project_id).can_spawn:
                    break
            self._shutdown.wait(self.config.poll_interval)

        logger.info("Scheduler stopped for %s after %d tick(s)", project_id, ticks)
        return {
            "project_id": project_id,
            "ticks": ticks,
            "resumed": resumed,
            **totals,
            "budget_exhausted": self.budget_exhausted,
            "shutdown_requested": self._shutdown.is_set(),
        }

    def resume(self, project_id: str) -> list[str]:
        """Return tasks left running by a previous process to the ready pool."""
        live = {h.task_id for h in self.in_flight(project_id)}
        resumed = []
        for status in ("running", "impasse"):
            for task in self.store.read(list_tasks, project_id, status=status):
                if task.id in live:
                    continue
                self.store.write(update_task, task.id, metadata={"resumed": True})
                self.store.write(update_task_status, task.id, "pending")
                resumed.append(task.id)
        if resumed:
            logger.info("Resumed %d interrupted task(s): %s", len(resumed), ", ".join(resumed))
        return resumed

    def request_shutdown(self):
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def start_maintenance(self) -> MaintenanceTimer:
        """Move signal decay from the loop to a background timer."""
        if self.timer is None:
            self.timer = MaintenanceTimer(self.signals, self.config.decay_interval)
        self.timer.start()
        return self.timer

    def shutdown(self) -> dict:
        """Kill live workers, flush a final snapshot and close the store."""
        self.request_shutdown()
        interrupted = []
        for handle in self.workers.active_handles():
            self.workers.release(handle, "killed")
            if handle.helper:
                self.recovery.release_helper(handle.task_id)
            self.store.write(update_task, handle.task_id, metadata={"resume": True})
            self.store.write(update_task_status, handle.task_id, "pending")
            interrupted.append(handle.task_id)
        stray = self.workers.sessions.kill_all()
        if stray:
            logger.warning("Killed %d session(s) without a worker handle", len(stray))

        snapshot = None
        if not self.store.closed:
            snapshot = str(self.store.auto_save_snapshot(self.config.resolve(self.config.snapshot_dir)))
        if self.timer is not None:
            self.timer.stop()
        self.store.close()
        logger.info("Shut down with %d interrupted task(s)", len(interrupted))
        return {"interrupted": interrupted, "stray_sessions": stray, "snapshot": snapshot}

    # ── Steps ────────────────────────────────────────────────────────────────

    def _harvest(self, project_id: str, summary: dict):
        now = self._clock()
        for handle in self.in_flight(project_id):
            try:
                exit_code = self.workers.poll(handle)
            except SessionError:
                continue  # Torn down elsewhere this tick

            if exit_code is None:
                elapsed = (now - handle.started_at).total_seconds()
                if elapsed > self.config.worker_timeout:
                    output = self.workers.read_output(handle.session_id)
                    self.workers.release(handle, "killed")
                    self._fail(
                        handle,
                        "timeout",
                        "high",
                        f"Worker {handle.session_id} exceeded {self.config.worker_timeout:.0f}s",
                        output,
                    )
                    summary["failed"].append(handle.task_id)
                continue

            result = self.workers.parse_result(handle)
            self.budget.record_usage(project_id, result.tokens, result.cost)
            if exit_code == 0 and not result.is_error:
                self.workers.release(handle, "completed", exit_code, result)
                self._handle_success(handle, result, summary)
            else:
                self.workers.release(handle, "failed", exit_code, result)
                self._fail(
                    handle,
                    "workflow_step_error",
                    "medium",
                    f"{handle.role} exited with code {exit_code}",
                    result.raw,
                )
                summary["failed"].append(handle.task_id)

    def _collect_reports(self, project_id: str, summary: dict):
        for status in ("running", "impasse"):
            for task in self.store.read(list_tasks, project_id, status=status):
                for key, kind in REPORT_KINDS.items():
                    report = task.metadata.get(key)
                    if not report:
                        continue
                    self.store.write(update_task, task.id, drop_metadata=[key])
                    handles = self.workers.handles_for_task(task.id)
                    if not handles:
                        logger.warning("Dropping %s for %s: no live worker", key, task.id)
                        continue
                    handle = next((h for h in handles if h.helper), handles[0])
                    output = self.workers.read_output(handle.session_id)
                    self.workers.release(handle, "killed")
                    severity = report.get("severity", "medium")
                    if severity not in SEVERITIES:
                        severity = "medium"
                    self._fail(handle, kind, severity, report.get("description", kind), output)
                    summary["reports"].append({"task_id": task.id, "kind": kind})
                    break

    def _admit(self, project_id: str, summary: dict):
        busy = {h.task_id for h in self.in_flight(project_id)}
        slots = self.config.max_concurrent_tasks - len(busy)
        if slots <= 0:
            return

        for task in self.store.read(get_ready_tasks, project_id):
            if slots <= 0 or self._shutdown.is_set():
                break
            if task.id in busy:
                continue

            status = self.budget.check(project_id)
            if status.state == "exceeded":
                logger.error(
                    "Budget exceeded for %s (%d tokens, $%.2f); stopping",
                    project_id, status.tokens_used, status.cost_used,
                )
                self.budget_exhausted = True
                summary["budget"] = "exceeded"
                break
            if status.state == "warning":
                logger.warning(
                    "Budget for %s at %.0f%%; not spawning %s",
                    project_id, status.utilization * 100, task.id,
                )
                summary["budget"] = "warning"
                break

            self.workflow.initialize(task.id, task.stage)
            role = self.workflow.role_for(task.id)
            self.store.write(update_task_status, task.id, "running")
            try:
                self.workers.spawn(task, role)
            except SpawnError as e:
                logger.error("Spawn failed for %s: %s", task.id, e)
                self.recovery.handle_failure(
                    ErrorContext("system_failure", "high", str(e), task.id, project_id=project_id)
                )
                summary["failed"].append(task.id)
                continue
            summary["spawned"].append(task.id)
            busy.add(task.id)
            slots -= 1

    # ── Outcomes ─────────────────────────────────────────────────────────────

    def _handle_success(self, handle: WorkerHandle, result: WorkerResult, summary: dict):
        if handle.helper:
            self._handle_helper_success(handle, summary)
            return

        task = self.store.read(require_task, handle.task_id)
        duration = (self._clock() - handle.started_at).total_seconds()
        signal = self.signals.emit(
            "guide",
            f"stage:{task.stage} {task.title}",
            pattern=SignalPattern(
                stage=task.stage,
                outcome="success",
                role=handle.role,
                complexity=task_complexity(task.metadata),
                duration=duration,
            ),
            project_id=task.project_id,
            metadata={"task_id": task.id, "summary": result.summary[:500]},
        )
        self.signals.link_to_task(signal.id, task.id)

        self.workflow.initialize(task.id, task.stage)
        following = self.workflow.advance(task.id)
        self.workers.complete(
            task.id,
            remove_workspace=following is None,
            message=f"{task.stage}: {task.title}",
        )
        self.store.write(
            update_task,
            task.id,
            stage=following,
            metadata={"result_summary": result.summary[:2000]},
            drop_metadata=["resume", "resumed"],
        )
        if following is None:
            self.store.write(update_task_status, task.id, "completed")
            self.workflow.invalidate(task.id)
            logger.info("Task %s completed", task.id)
            summary["completed"].append(task.id)
        else:
            self.store.write(update_task_status, task.id, "pending")
            summary["advanced"].append({"task_id": task.id, "stage": following})

        # Release work paused by this task's critique
        summary["resumed"].extend(self.recovery.resume_paused(task.project_id, blocked_by=task.id))

    def _handle_helper_success(self, handle: WorkerHandle, summary: dict):
        self.recovery.release_helper(handle.task_id)
        try:
            self.workers.finish_helper(handle, success=True)
        except GitError as e:
            self._fail(handle, "system_failure", "high", f"Could not merge helper work: {e}")
            summary["failed"].append(handle.task_id)
            return

        task = self.store.read(require_task, handle.task_id)
        retries = task.retry_count + 1
        if retries > self.config.max_task_retries:
            self._escalate(task.id, handle.project_id, f"Retry limit {self.config.max_task_retries} reached")
            summary["failed"].append(task.id)
            return
        self.store.write(update_task, task.id, retry_count=retries)
        self.store.write(update_task_status, task.id, "pending")
        logger.info("Helper %s finished; task %s retry %d", handle.role, task.id, retries)

    def _fail(
        self,
        handle: WorkerHandle,
        kind: str,
        severity: str,
        message: str,
        output: str | None = None,
    ):
        error = ErrorContext(
            kind, severity, message, handle.task_id, project_id=handle.project_id, output=output
        )
        if handle.helper:
            self.recovery.release_helper(handle.task_id)
            try:
                self.workers.finish_helper(handle, success=False)
            except GitError:
                logger.exception("Could not clean up helper workspace %s", handle.key)
            task = self.store.read(require_task, handle.task_id)
            retries = task.retry_count + 1
            self.store.write(update_task, task.id, retry_count=retries)
            if retries > self.config.max_task_retries:
                error.message = f"{message} (retry limit {self.config.max_task_retries} reached)"
                self.recovery.handle_failure(error, force_escalate=True)
                return
        self.recovery.handle_failure(error)

    def _escalate(self, task_id: str, project_id: str, message: str):
        history = self.recovery.error_history(task_id)
        last = history[-1] if history else None
        error = ErrorContext(
            last.kind if last else "workflow_step_error",
            last.severity if last else "medium",
            message,
            task_id,
            project_id=project_id,
        )
        self.recovery.handle_failure(error, force_escalate=True)

    # ── Operator actions ─────────────────────────────────────────────────────

    def retry_task(self, task_id: str):
        """Reset a failed or stuck task so the next tick picks it up again."""
        task = self.store.read(require_task, task_id)
        if task.status == "completed":
            raise ValueError(f"Task {task_id} is already completed")
        for handle in self.workers.handles_for_task(task_id):
            self.workers.release(handle, "killed")
        self.recovery.release_helper(task_id)
        self.workers.cleanup_task(task_id)
        self.store.write(update_task, task_id, drop_metadata=list(REPORT_KINDS))
        for escalation in self.store.read(artifacts.list_escalations, task.project_id):
            if escalation.task_id == task_id:
                self.store.write(artifacts.resolve_escalation, escalation.id)
        self.store.write(update_task_status, task_id, "pending")
        self.workflow.invalidate(task_id)
        logger.info("Task %s reset for retry at %s", task_id, task.stage)
        return self.store.read(require_task, task_id)

    def status(self, project_id: str) -> dict:
        tasks = self.store.read(list_tasks, project_id)
        rows = []
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.status] = counts.get(task.status, 0) + 1
            failures = self.store.read(artifacts.get_task_failures, task.id)
            last = max(failures, key=lambda f: f.created_at) if failures else None
            rows.append({
                "id": task.id,
                "title": task.title,
                "stage": task.stage,
                "status": task.status,
                "priority": task.priority,
                "retry_count": task.retry_count,
                "depends_on": task.depends_on,
                "last_error": f"{last.kind}/{last.severity}: {last.message}" if last else None,
            })
        done = counts.get("completed", 0)
        escalations = self.store.read(artifacts.list_escalations, project_id)
        return {
            "project_id": project_id,
            "tasks": rows,
            "counts": counts,
            "total": len(tasks),
            "progress": round(100.0 * done / len(tasks), 1) if tasks else 0.0,
            "in_flight": [h.task_id for h in self.in_flight(project_id)],
            "budget": self.budget.check(project_id).as_dict(),
            "escalations": [
                {
                    "id": e.id,
                    "task_id": e.task_id,
                    "kind": e.kind,
                    "severity": e.severity,
                    "stage": e.stage,
                    "message": e.message,
                }
                for e in escalations
            ],
        }


def build_scheduler(
    config: Config,
    store: KnowledgeStore | None = None,
    slack_channel: str | None = None,
) -> Scheduler:
    """Wire a Scheduler and its collaborators from configuration."""
    store = store or KnowledgeStore.open(config.db_path, max_attempts=config.tx_max_attempts)
    signals = SignalCoordinator(store)
    workflow = WorkflowStateMachine()
    workers = WorkerLifecycleManager(store, config, signals=signals)
    notifier = None
    if config.slack_bot_token and slack_channel:
        notifier = EscalationNotifier(config.slack_bot_token, slack_channel)
    budget = BudgetGuard(store, config.default_max_tokens, config.default_max_cost)
    recovery = RecoveryEngine(store, signals, workflow, workers, notifier=notifier, budget=budget)
    return Scheduler(store, workflow, signals, workers, recovery, budget, config)
