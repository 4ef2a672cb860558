"""Task management operations."""

import re
import sqlite3

from swarm_orchestrator.core.projects import require_project
from swarm_orchestrator.core.workflow import STAGES, infer_initial_stage
from swarm_orchestrator.db import graph
from swarm_orchestrator.db.models import TASK_STATUSES, Task, TaskEvent

DEPENDS_ON = "DEPENDS_ON"


class TaskStateError(ValueError):
    """Raised when a task status transition is not allowed."""


class DependencyCycleError(ValueError):
    """Raised when a dependency edge would make the task graph cyclic."""


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique node ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    if not graph.node_exists(db, base_slug):
        return base_slug

    i = 2
    while graph.node_exists(db, f"{base_slug}-{i}"):
        i += 1
    return f"{base_slug}-{i}"


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str,
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 3,
    stage: str | None = None,
    metadata: dict | None = None,
) -> Task:
    """Create a new pending task.

    The initial stage is inferred from the title when not given.
    """
    require_project(db, project_id)
    if stage is None:
        stage = infer_initial_stage(title)
    elif stage not in STAGES:
        raise ValueError(f"Unknown workflow stage: {stage}")

    task = Task(
        id=_unique_id(db, slugify(title)),
        project_id=project_id,
        title=title,
        description=description,
        priority=max(0, min(6, priority)),
        stage=stage,
        metadata=dict(metadata or {}),
    )
    graph.save_record(db, task)
    log_event(db, task.id, "created", None, "pending")

    for dep_id in depends_on or []:
        add_dependency(db, task.id, dep_id)

    return get_task(db, task.id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    task = graph.get_record(db, Task, task_id)
    if not task:
        return None
    task.depends_on = [r["id"] for r in graph.related(db, task_id, DEPENDS_ON, "out")]
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    stage: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    where = {}
    if status:
        where["status"] = status
    if stage:
        where["stage"] = stage
    rows = graph.find_nodes(
        db,
        "Task",
        project_id=project_id,
        where=where,
        order_by="json_extract(properties, '$.priority') ASC, created_at ASC, id ASC",
    )
    tasks = []
    for row in rows:
        task = graph.row_to_record(row)
        task.depends_on = [r["id"] for r in graph.related(db, task.id, DEPENDS_ON, "out")]
        tasks.append(task)
    return tasks


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task:
    """Update a task's status. Returns the updated task.

    A task may only become completed once all of its dependencies are.
    """
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status: {status}")
    task = require_task(db, task_id)
    old_status = task.status
    if old_status == status:
        return task

    updates: dict = {"status": status}
    if status == "completed":
        incomplete = [d.id for d in get_dependencies(db, task_id) if d.status != "completed"]
        if incomplete:
            raise TaskStateError(
                f"Task {task_id} cannot complete; dependencies not completed: {', '.join(incomplete)}"
            )
        updates["completed_at"] = graph.now_iso()

    graph.update_node(db, task_id, updates)
    log_event(db, task_id, "status_changed", old_status, status)
    return get_task(db, task_id)


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    stage: str | None = None,
    priority: int | None = None,
    retry_count: int | None = None,
    metadata: dict | None = None,
    drop_metadata: list[str] | None = None,
) -> Task:
    """Update a task's stage, priority, retry count or metadata.

    `metadata` is merged into the existing map; keys in `drop_metadata`
    are removed.
    """
    task = require_task(db, task_id)
    updates: dict = {}

    if stage is not None and stage != task.stage:
        if stage not in STAGES:
            raise ValueError(f"Unknown workflow stage: {stage}")
        updates["stage"] = stage
        log_event(db, task_id, "stage_changed", task.stage, stage)

    if priority is not None:
        updates["priority"] = max(0, min(6, priority))

    if retry_count is not None:
        updates["retry_count"] = retry_count

    if metadata or drop_metadata:
        merged = dict(task.metadata)
        merged.update(metadata or {})
        for key in drop_metadata or []:
            merged.pop(key, None)
        updates["metadata"] = merged

    if updates:
        graph.update_node(db, task_id, updates)
    return get_task(db, task_id)


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task:
    """Add a dependency to an existing task.

    Raises DependencyCycleError if depends_on_id already (transitively)
    depends on task_id.
    """
    task = require_task(db, task_id)
    if not get_task(db, depends_on_id):
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task
    if depends_on_id == task_id or _reaches(db, depends_on_id, task_id):
        raise DependencyCycleError(
            f"Dependency {task_id} -> {depends_on_id} would create a cycle"
        )
    graph.create_relationship(db, task_id, depends_on_id, DEPENDS_ON)
    log_event(db, task_id, "dependency_added", None, depends_on_id)
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task:
    """Remove a dependency from a task."""
    require_task(db, task_id)
    if graph.delete_relationship(db, task_id, depends_on_id, DEPENDS_ON):
        log_event(db, task_id, "dependency_removed", depends_on_id, None)
    return get_task(db, task_id)


def _reaches(db: sqlite3.Connection, start_id: str, target_id: str) -> bool:
    """True if target_id is reachable from start_id over DEPENDS_ON edges."""
    seen = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(r["id"] for r in graph.related(db, current, DEPENDS_ON, "out"))
    return False


def get_dependencies(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Tasks that task_id depends on."""
    return [
        get_task(db, r["id"]) for r in graph.related(db, task_id, DEPENDS_ON, "out")
    ]


def get_dependents(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Tasks that depend on task_id."""
    return [
        get_task(db, r["id"]) for r in graph.related(db, task_id, DEPENDS_ON, "in")
    ]


def get_blocked_tasks(db: sqlite3.Connection, project_id: str) -> list[Task]:
    """Get pending tasks whose dependencies are not all completed."""
    tasks = list_tasks(db, project_id, status="pending")
    blocked = []
    for task in tasks:
        for dep_id in task.depends_on:
            dep = get_task(db, dep_id)
            if dep and dep.status != "completed":
                blocked.append(task)
                break
    return blocked


def get_ready_tasks(db: sqlite3.Connection, project_id: str) -> list[Task]:
    """Get tasks that are pending and have all dependencies completed."""
    tasks = list_tasks(db, project_id, status="pending")
    ready = []
    for task in tasks:
        all_done = all(
            (dep := get_task(db, dep_id)) and dep.status == "completed"
            for dep_id in task.depends_on
        )
        if all_done:
            ready.append(task)
    return ready


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=graph.parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
):
    """Append an entry to a task's audit log."""
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )
