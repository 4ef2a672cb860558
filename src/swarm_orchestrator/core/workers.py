"""Worker lifecycle: workspace + session allocation, prompt composition, teardown."""

import json
import logging
import shlex
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from swarm_orchestrator.config import Config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import worktrees as worktrees_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.projects import require_project
from swarm_orchestrator.core.sessions import SessionError, SessionManager
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.core.tasks import get_dependencies, require_task
from swarm_orchestrator.core.workflow import STEP_CONFIGS
from swarm_orchestrator.db.models import Project, Task
from swarm_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    current_branch,
    merge_branch,
)

logger = logging.getLogger(__name__)


class SpawnError(Exception):
    """Raised when a worker cannot be started."""


@dataclass
class WorkerHandle:
    worker_id: str
    task_id: str
    project_id: str
    role: str
    key: str
    session_id: str
    workspace: str
    branch: str
    output_file: str
    helper: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class WorkerResult:
    summary: str
    tokens: int = 0
    cost: float = 0.0
    is_error: bool = False
    raw: str = ""


def workspace_key(task_id: str, role: str | None = None, helper: bool = False) -> str:
    return worktrees_mod.helper_key(task_id, role) if helper else task_id


class WorkerLifecycleManager:
    def __init__(
        self,
        store: KnowledgeStore,
        config: Config,
        sessions: SessionManager | None = None,
        signals: SignalCoordinator | None = None,
    ):
        self.store = store
        self.config = config
        self.sessions = sessions or SessionManager(config.resolve(config.output_dir))
        self.signals = signals
        self._handles: dict[str, WorkerHandle] = {}
        self._lock = threading.Lock()

    # ── Spawning ─────────────────────────────────────────────────────────────

    def spawn(
        self,
        task: Task,
        role: str,
        context: dict | str | None = None,
        helper: bool = False,
    ) -> WorkerHandle:
        """Start a worker for a task in its own workspace and session."""
        project = self.store.read(require_project, task.project_id)
        if not project.repo_path:
            raise SpawnError(f"Project {project.id} has no repository path")

        key = workspace_key(task.id, role, helper)
        try:
            base = self._helper_base(project, task) if helper else project.base_branch
            ws = worktrees_mod.create_workspace(
                project.repo_path, key, self.config.worktree_dir, base
            )
        except (GitError, OSError) as e:
            raise SpawnError(f"Failed to spawn {role} for task {task.id}: {e}") from e

        try:
            prompt = self.build_prompt(task, role, context, project=project)
            session = self.sessions.open(
                key, self.build_command(prompt), ws["worktree_path"], task_id=task.id
            )
        except (SessionError, OSError) as e:
            self._discard_workspace(project, ws)
            raise SpawnError(f"Failed to spawn {role} for task {task.id}: {e}") from e

        try:
            worker = self.store.write(
                artifacts.create_worker,
                task.id,
                role,
                session_id=session.session_id,
                workspace=ws["worktree_path"],
                branch=ws["branch"],
                helper=helper,
            )
        except Exception as e:
            self.sessions.kill(session.session_id)
            self._discard_workspace(project, ws)
            raise SpawnError(f"Could not record {role} worker for task {task.id}: {e}") from e

        handle = WorkerHandle(
            worker_id=worker.id,
            task_id=task.id,
            project_id=task.project_id,
            role=role,
            key=key,
            session_id=session.session_id,
            workspace=ws["worktree_path"],
            branch=ws["branch"],
            output_file=session.output_file,
            helper=helper,
            started_at=session.started_at,
        )
        with self._lock:
            self._handles[handle.session_id] = handle
        logger.info(
            "Spawned %s%s for task %s (session %s)",
            role, " helper" if helper else "", task.id, session.session_id,
        )
        return handle

    def build_command(self, prompt: str) -> list[str]:
        cmd = shlex.split(self.config.agent_command)
        cmd += ["-p", prompt, "--output-format", "json"]
        if self.config.agent_model:
            cmd += ["--model", self.config.agent_model]
        if self.config.permission_mode:
            cmd += ["--permission-mode", self.config.permission_mode]
        if self.config.agent_max_turns:
            cmd += ["--max-turns", str(self.config.agent_max_turns)]
        return cmd

    def build_prompt(
        self,
        task: Task,
        role: str,
        context: dict | str | None = None,
        project: Project | None = None,
    ) -> str:
        """Compose the worker's context: task, stage, signals, upstream work."""
        step = STEP_CONFIGS[task.stage]
        project = project or self.store.read(require_project, task.project_id)

        parts = [f"# Task: {task.title}", f"Task ID: {task.id}", f"Role: {role}"]
        if task.description:
            parts.append(f"\n## Description\n{task.description}")

        parts.append(f"\n## Stage: {task.stage}\n{step.guidance}")
        if step.required_inputs:
            parts.append(f"Inputs: {', '.join(step.required_inputs)}")
        if step.expected_outputs:
            parts.append(f"Expected outputs: {', '.join(step.expected_outputs)}")

        parts.append("\n## Project Context")
        parts.append(f"Project: {project.name} ({project.id})")
        parts.append(f"Base branch: {project.base_branch}")

        deps = self.store.read(get_dependencies, task.id)
        if deps:
            parts.append("\n## Upstream Tasks")
            for dep in deps:
                summary = dep.metadata.get("result_summary", "")
                line = f"- {dep.title} ({dep.id}): {dep.status}"
                parts.append(f"{line} - {summary[:300]}" if summary else line)

        decisions = self.store.read(artifacts.list_decisions, task.project_id)
        contracts = self.store.read(artifacts.list_contracts, task.project_id)
        if decisions or contracts:
            parts.append("\n## Recorded Artifacts")
            for d in decisions[-5:]:
                parts.append(f"- Decision: {d.title}: {d.rationale or d.description}")
            for c in contracts[-5:]:
                parts.append(f"- Contract: {c.name} v{c.version} ({c.id})")

        if self.signals is not None:
            buckets = self.signals.contextual(
                role, f"stage:{task.stage}", task.metadata.get("complexity")
            )
            if buckets["guides"]:
                parts.append("\n## Guidance From Past Work")
                for s in buckets["guides"][:5]:
                    parts.append(f"- ({s.strength:.2f}) {s.context}")
            if buckets["warnings"]:
                parts.append("\n## Warnings From Past Failures")
                for s in buckets["warnings"][:5]:
                    parts.append(f"- ({s.strength:.2f}) {s.context}")

        if context:
            parts.append("\n## Recovery Context")
            if isinstance(context, dict):
                parts.append(json.dumps(context, indent=2, default=str))
            else:
                parts.append(str(context))

        parts.append(
            "\n## Orchestrator Integration\n"
            "You have access to the swarm-orchestrator MCP tools. Use them to:\n"
            f"- Record decisions, contracts, code modules and tests for task_id='{task.id}'.\n"
            "- Call `report_impasse` if you cannot make progress without help.\n"
            "- Call `report_critique_failure` if upstream output fails your quality review.\n"
            "\n"
            "Do NOT change task status yourself; the orchestrator does that."
        )
        parts.append(
            "\n## Completion\n"
            "Commit nothing yourself; leave your changes in the working tree. "
            "Finish with a brief summary of what was accomplished and any issues encountered."
        )
        return "\n".join(parts)

    # ── Running workers ──────────────────────────────────────────────────────

    def poll(self, handle: WorkerHandle) -> int | None:
        return self.sessions.poll(handle.session_id)

    def read_output(self, session_id: str) -> str | None:
        return self.sessions.read_output(session_id)

    def kill(self, session_id: str) -> bool:
        return self.sessions.kill(session_id)

    def active_handles(self) -> list[WorkerHandle]:
        with self._lock:
            return list(self._handles.values())

    def handles_for_task(self, task_id: str) -> list[WorkerHandle]:
        return [h for h in self.active_handles() if h.task_id == task_id]

    def parse_result(self, handle: WorkerHandle) -> WorkerResult:
        """Summary and usage from a worker's JSON result document."""
        content = self.read_output(handle.session_id) or ""
        if not content.strip():
            return WorkerResult(summary="(empty output)", raw=content)
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            return WorkerResult(summary=content[-500:], raw=content)
        if not isinstance(data, dict):
            return WorkerResult(summary=content[-500:], raw=content)
        usage = data.get("usage") or {}
        tokens = sum(
            int(usage.get(k) or 0)
            for k in ("input_tokens", "output_tokens", "cache_creation_input_tokens")
        )
        return WorkerResult(
            summary=str(data.get("result", content[:500])),
            tokens=tokens,
            cost=float(data.get("total_cost_usd") or 0.0),
            is_error=bool(data.get("is_error", False)),
            raw=content,
        )

    def release(
        self,
        handle: WorkerHandle,
        status: str,
        exit_code: int | None = None,
        result: WorkerResult | None = None,
    ):
        """Record a worker's outcome and drop its session from the registry."""
        fields: dict = {"status": status, "exit_code": exit_code}
        if result is not None:
            fields.update(tokens=result.tokens, cost=result.cost)
        self.store.write(artifacts.update_worker, handle.worker_id, **fields)
        self.sessions.kill(handle.session_id)
        with self._lock:
            self._handles.pop(handle.session_id, None)

    # ── Teardown ─────────────────────────────────────────────────────────────

    def complete(
        self,
        task_id: str,
        remove_workspace: bool = True,
        message: str | None = None,
    ) -> dict:
        """Commit the task's workspace, close its session, remove the workspace."""
        task = self.store.read(require_task, task_id)
        project = self.store.read(require_project, task.project_id)
        sha = worktrees_mod.commit_workspace(
            project.repo_path,
            task_id,
            message or f"{task.stage}: {task.title}",
            self.config.worktree_dir,
        )
        self._close_sessions(task_id, helpers=False)
        removed = False
        if remove_workspace:
            removed = worktrees_mod.remove_workspace(
                project.repo_path, task_id, self.config.worktree_dir
            )["removed"]
        return {"task_id": task_id, "commit": sha, "workspace_removed": removed}

    def cleanup_task(self, task_id: str) -> dict:
        """Tear down every session and workspace belonging to a task.

        Uncommitted work is committed to the workspace branch first so it
        survives the workspace.
        """
        task = self.store.read(require_task, task_id)
        project = self.store.read(require_project, task.project_id)
        killed = self._close_sessions(task_id, helpers=True)
        removed = []
        for ws in self._task_workspaces(project, task_id):
            worktrees_mod.commit_workspace(
                project.repo_path, ws["key"], f"WIP: {task.title}", self.config.worktree_dir
            )
            result = worktrees_mod.remove_workspace(
                project.repo_path, ws["key"], self.config.worktree_dir
            )
            if result["removed"]:
                removed.append(ws["key"])
        return {"task_id": task_id, "sessions_killed": killed, "workspaces_removed": removed}

    def teardown_orphans(self, project_id: str, active_task_ids: set[str]) -> dict:
        """Remove sessions and clean workspaces whose task is not active.

        Workspaces with uncommitted changes are logged and skipped.
        """
        project = self.store.read(require_project, project_id)
        killed = []
        for session in self.sessions.all_sessions():
            if session.task_id not in active_task_ids:
                self.sessions.kill(session.session_id)
                with self._lock:
                    self._handles.pop(session.session_id, None)
                killed.append(session.session_id)

        removed, skipped = [], []
        if project.repo_path:
            for ws in worktrees_mod.list_workspaces(project.repo_path, self.config.worktree_dir):
                if ws["task_id"] in active_task_ids:
                    continue
                result = worktrees_mod.remove_workspace(
                    project.repo_path, ws["key"], self.config.worktree_dir
                )
                if result["removed"]:
                    removed.append(ws["key"])
                else:
                    logger.warning(
                        "Skipping orphaned workspace %s: %s", ws["key"], result["reason"]
                    )
                    skipped.append({"key": ws["key"], "reason": result["reason"]})
        return {"sessions_killed": killed, "removed": removed, "skipped": skipped}

    def workspace_status(self, task_id: str) -> dict:
        task = self.store.read(require_task, task_id)
        project = self.store.read(require_project, task.project_id)
        return worktrees_mod.workspace_status(
            project.repo_path, task_id, self.config.worktree_dir
        )

    def merge(self, task_id: str) -> dict:
        """Merge a completed task's branch into the project's base branch."""
        task = self.store.read(require_task, task_id)
        if task.status != "completed":
            raise ValueError(f"Task {task_id} is not completed (status: {task.status})")
        project = self.store.read(require_project, task.project_id)
        current = current_branch(project.repo_path)
        if current != project.base_branch:
            raise GitError(
                f"Repository is on {current}, expected base branch {project.base_branch}"
            )
        branch = worktrees_mod.workspace_branch(task_id)
        merge_branch(project.repo_path, branch, f"Merge task {task_id}: {task.title}")
        logger.info("Merged %s into %s", branch, project.base_branch)
        return {"task_id": task_id, "branch": branch, "merged_into": project.base_branch}

    def finish_helper(self, handle: WorkerHandle, success: bool) -> str | None:
        """Fold a helper's work back into its task's workspace.

        On success the helper branch is merged into the task branch and the
        helper workspace and branch are removed. A failed helper's branch is
        kept for inspection.
        """
        project = self.store.read(require_project, handle.project_id)
        repo = project.repo_path
        sha = worktrees_mod.commit_workspace(
            repo, handle.key, f"{handle.role} work for {handle.task_id}", self.config.worktree_dir
        )
        if success and sha:
            parent = worktrees_mod.create_workspace(
                repo, handle.task_id, self.config.worktree_dir, project.base_branch
            )
            merge_branch(parent["worktree_path"], handle.branch, f"Merge {handle.role} fixes")
        worktrees_mod.remove_workspace(
            repo, handle.key, self.config.worktree_dir, force=True, delete_branch_after=success
        )
        return sha

    def _helper_base(self, project: Project, task: Task) -> str:
        """Helpers start from the task's own branch so they see its work."""
        worktrees_mod.commit_workspace(
            project.repo_path, task.id, f"WIP: {task.stage} before recovery", self.config.worktree_dir
        )
        branch = worktrees_mod.workspace_branch(task.id)
        if branch_exists(project.repo_path, branch):
            return branch
        return project.base_branch

    def _close_sessions(self, task_id: str, helpers: bool) -> list[str]:
        killed = []
        for session in self.sessions.all_sessions():
            if session.task_id != task_id:
                continue
            if session.key == task_id or helpers:
                self.sessions.kill(session.session_id)
                with self._lock:
                    self._handles.pop(session.session_id, None)
                killed.append(session.session_id)
        return killed

    def _task_workspaces(self, project: Project, task_id: str) -> list[dict]:
        if not project.repo_path:
            return []
        return [
            ws for ws in worktrees_mod.list_workspaces(project.repo_path, self.config.worktree_dir)
            if ws["task_id"] == task_id
        ]

    def _discard_workspace(self, project: Project, ws: dict):
        """Undo a workspace created by a spawn that did not go through."""
        if ws["already_existed"]:
            return
        try:
            worktrees_mod.remove_workspace(
                project.repo_path,
                ws["key"],
                self.config.worktree_dir,
                force=True,
                delete_branch_after=ws["new_branch"],
            )
        except GitError:
            logger.exception("Could not remove workspace %s after failed spawn", ws["key"])
