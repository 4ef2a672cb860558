"""Project management operations."""

import sqlite3

from swarm_orchestrator.db import graph
from swarm_orchestrator.db.models import Project

_UPDATABLE = {
    "name", "status", "repo_path", "base_branch", "slack_channel",
    "max_tokens", "max_cost", "metadata",
}


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str = "",
    base_branch: str = "main",
    slack_channel: str | None = None,
    max_tokens: int | None = None,
    max_cost: float | None = None,
) -> Project:
    """Create a new project."""
    if graph.node_exists(db, project_id):
        raise ValueError(f"Project already exists: {project_id}")
    project = Project(
        id=project_id,
        name=name,
        repo_path=repo_path,
        base_branch=base_branch,
        slack_channel=slack_channel,
        max_tokens=max_tokens,
        max_cost=max_cost,
    )
    graph.save_record(db, project)
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    return graph.get_record(db, Project, project_id)


def require_project(db: sqlite3.Connection, project_id: str) -> Project:
    project = get_project(db, project_id)
    if not project:
        raise ValueError(f"Project not found: {project_id}")
    return project


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    return graph.list_records(db, Project)


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project:
    """Update project fields."""
    require_project(db, project_id)
    updates = {k: v for k, v in kwargs.items() if k in _UPDATABLE and v is not None}
    if updates:
        graph.update_node(db, project_id, updates)
    return get_project(db, project_id)


def record_usage(
    db: sqlite3.Connection,
    project_id: str,
    tokens: int = 0,
    cost: float = 0.0,
) -> Project:
    """Add token and cost usage to a project's running totals."""
    project = require_project(db, project_id)
    graph.update_node(db, project_id, {
        "tokens_used": project.tokens_used + int(tokens),
        "cost_used": round(project.cost_used + float(cost), 6),
    })
    return get_project(db, project_id)
