"""CLI entry point for the swarm orchestrator."""

import json
import logging
import os
import signal
import sys
from contextlib import contextmanager

import click

from swarm_orchestrator.config import configure_logging, get_config
from swarm_orchestrator.core import artifacts
from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core import snapshots as snapshots_mod
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.core.scheduler import build_scheduler
from swarm_orchestrator.core.signals import SignalCoordinator
from swarm_orchestrator.core.workers import WorkerLifecycleManager
from swarm_orchestrator.core.workflow import WorkflowStateMachine
from swarm_orchestrator.integrations.git import GitError
from swarm_orchestrator.integrations.slack import format_status_update, send_message

logger = logging.getLogger(__name__)

EXIT_ESCALATED = 2


@contextmanager
def _open_store():
    config = get_config()
    store = KnowledgeStore.open(config.db_path, max_attempts=config.tx_max_attempts)
    try:
        yield store
    finally:
        store.close()


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """swarm - multi-agent task orchestrator"""
    config = get_config()
    configure_logging("DEBUG" if verbose else config.log_level)


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Base branch name")
@click.option("--slack-channel", default=None, help="Slack channel for escalations")
@click.option("--max-tokens", default=None, type=int, help="Token budget")
@click.option("--max-cost", default=None, type=float, help="Cost budget in USD")
def init_project(project_name, repo_path, branch, slack_channel, max_tokens, max_cost):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _open_store() as store:
        try:
            project = store.write(
                projects_mod.create_project,
                project_id,
                project_name,
                repo_path,
                branch,
                slack_channel,
                max_tokens,
                max_cost,
            )
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.base_branch}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
@click.option("--stage", default=None, help="Starting workflow stage (inferred from title if omitted)")
@click.option("--complexity", type=click.Choice(["low", "medium", "high"]), default=None)
def task_add(title, project, description, depends_on, priority, stage, complexity):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    metadata = {"complexity": complexity} if complexity else None

    with _open_store() as store:
        try:
            task = store.write(
                tasks_mod.create_task,
                title,
                project,
                description,
                depends_on=deps,
                priority=priority,
                stage=stage,
                metadata=metadata,
            )
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Stage: {task.stage}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


STATUS_ICONS = {
    "pending": "○",
    "running": "●",
    "completed": "✓",
    "failed": "✗",
    "impasse": "!",
    "paused": "‖",
}


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--blocked", is_flag=True, help="Only pending tasks waiting on unfinished dependencies")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, blocked, json_output):
    """List tasks."""
    with _open_store() as store:
        if blocked:
            tasks = store.read(tasks_mod.get_blocked_tasks, project)
        else:
            tasks = store.read(tasks_mod.list_tasks, project, status=status)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = STATUS_ICONS.get(task.status, "?")
        deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
        click.echo(
            f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}, {task.stage}){deps}"
        )


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _open_store() as store:
        task = store.read(tasks_mod.get_task, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        events = store.read(tasks_mod.get_task_events, task_id)
        failures = store.read(artifacts.get_task_failures, task_id)
        workers = store.read(artifacts.list_task_workers, task_id)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Stage: {task.stage}")
    click.echo(f"  Priority: P{task.priority}")
    click.echo(f"  Retries: {task.retry_count}")
    if task.description:
        click.echo(f"  Description: {task.description}")
    if task.depends_on:
        click.echo(f"  Depends on: {', '.join(task.depends_on)}")
    if summary := task.metadata.get("result_summary"):
        click.echo(f"  Last result: {summary[:200]}")

    if workers:
        click.echo("  Workers:")
        for w in workers:
            click.echo(f"    {w.role} {w.session_id} ({w.status}, exit {w.exit_code})")
    if failures:
        click.echo("  Failures:")
        for f in failures:
            click.echo(f"    [{f.severity}] {f.kind} at {f.stage}: {f.message}")
    if events:
        click.echo("  History:")
        for e in events:
            click.echo(f"    {e.created_at}: {e.event_type} {e.old_value} -> {e.new_value}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _open_store() as store:
        try:
            task = store.write(tasks_mod.add_dependency, task_id, depends_on_id)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"{task.id} now depends on: {', '.join(task.depends_on)}")


@task_group.command("rm-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_rm_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _open_store() as store:
        try:
            task = store.write(tasks_mod.remove_dependency, task_id, depends_on_id)
        except ValueError as e:
            _fail(str(e))
    deps = ", ".join(task.depends_on) or "nothing"
    click.echo(f"{task.id} now depends on: {deps}")


@task_group.command("skip")
@click.argument("task_id")
@click.argument("stage")
def task_skip(task_id, stage):
    """Move a pending task forward to a later workflow stage."""
    with _open_store() as store:
        try:
            task = store.read(tasks_mod.require_task, task_id)
            if task.status not in ("pending", "paused", "failed"):
                raise ValueError(f"Task {task_id} is {task.status}; stop it before skipping")
            workflow = WorkflowStateMachine()
            workflow.initialize(task.id, task.stage)
            target = workflow.skip_to(task.id, stage)
            task = store.write(tasks_mod.update_task, task.id, stage=target)
        except ValueError as e:
            _fail(str(e))
    click.echo(f"Task {task.id} moved to stage {task.stage}")


@task_group.command("resume")
@click.option("--project", required=True, help="Project ID")
@click.option("--blocked-by", default=None, help="Only resume tasks paused by this task")
def task_resume(project, blocked_by):
    """Return paused tasks to pending."""
    config = get_config()
    with _open_store() as store:
        try:
            store.read(projects_mod.require_project, project)
        except ValueError as e:
            _fail(str(e))
        scheduler = build_scheduler(config, store)
        resumed = scheduler.recovery.resume_paused(project, blocked_by=blocked_by)
    if not resumed:
        click.echo("No paused tasks.")
        return
    click.echo(f"Resumed {len(resumed)} task(s): {', '.join(resumed)}")


@task_group.command("retry")
@click.argument("task_id")
def task_retry(task_id):
    """Reset a failed task and resolve its escalations."""
    config = get_config()
    with _open_store() as store:
        scheduler = build_scheduler(config, store)
        try:
            task = scheduler.retry_task(task_id)
        except (ValueError, GitError) as e:
            _fail(str(e))
        click.echo(f"Task {task.id} reset to {task.status} at stage {task.stage}")


@task_group.command("merge")
@click.argument("task_id")
def task_merge(task_id):
    """Merge a completed task's branch into the base branch."""
    config = get_config()
    with _open_store() as store:
        workers = WorkerLifecycleManager(store, config)
        try:
            result = workers.merge(task_id)
        except (ValueError, GitError) as e:
            _fail(str(e))
        click.echo(f"Merged {result['branch']} into {result['merged_into']}")


# ── Scheduling Commands ──────────────────────────────────────────────────────


@main.command("run")
@click.option("--project", default="default", help="Project ID")
@click.option("--max-concurrent", default=None, type=int, help="Override concurrent worker limit")
def run_command(project, max_concurrent):
    """Run the scheduler until the project has no more work."""
    config = get_config()
    if max_concurrent is not None:
        config.max_concurrent_tasks = max_concurrent

    store = KnowledgeStore.open(config.db_path, max_attempts=config.tx_max_attempts)
    proj = store.read(projects_mod.get_project, project)
    if not proj:
        store.close()
        _fail(f"Project not found: {project}")
    scheduler = build_scheduler(config, store, slack_channel=proj.slack_channel)

    def _request_shutdown(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        scheduler.request_shutdown()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    scheduler.start_maintenance()
    try:
        summary = scheduler.run(project)
        status = scheduler.status(project)
    finally:
        result = scheduler.shutdown()

    click.echo(f"Spawned: {len(summary['spawned'])} | Completed: {len(summary['completed'])} | "
               f"Failed: {len(summary['failed'])}")
    click.echo(f"Progress: {status['progress']:.0f}% ({status['counts'].get('completed', 0)}/{status['total']})")
    if summary["budget_exhausted"]:
        click.echo("Stopped: budget exhausted")
    if result["snapshot"]:
        click.echo(f"Snapshot: {result['snapshot']}")
    if status["escalations"]:
        click.echo(f"{len(status['escalations'])} escalation(s) need attention; see `swarm status`")
    if proj.slack_channel and config.slack_bot_token:
        _post_status(config.slack_bot_token, proj.slack_channel, project, status)


@main.command("status")
@click.option("--project", default="default", help="Project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_command(project, json_output):
    """Show per-task stage and status. Exits 2 if escalations are open."""
    config = get_config()
    with _open_store() as store:
        if not store.read(projects_mod.get_project, project):
            _fail(f"Project not found: {project}")
        status = build_scheduler(config, store).status(project)

    if json_output:
        click.echo(json.dumps(status, indent=2, default=str))
    else:
        click.echo(f"Project: {project}  ({status['progress']:.0f}% complete)")
        budget = status["budget"]
        click.echo(
            f"Budget: {budget['state']} ({budget['tokens_used']} tokens, ${budget['cost_used']:.2f})"
        )
        for row in status["tasks"]:
            icon = STATUS_ICONS.get(row["status"], "?")
            line = f"  {icon} {row['id']}: {row['stage']} ({row['status']}, retries {row['retry_count']})"
            click.echo(line)
            if row["last_error"] and row["status"] != "completed":
                click.echo(f"      last error: {row['last_error']}")
        if status["escalations"]:
            click.echo("Escalations:")
            for e in status["escalations"]:
                click.echo(f"  ✗ {e['task_id']} [{e['severity']}] {e['kind']} at {e['stage']}: {e['message']}")

    if status["escalations"]:
        sys.exit(EXIT_ESCALATED)


@main.command("cleanup")
@click.option("--project", default="default", help="Project ID")
def cleanup_command(project):
    """Remove workspaces of tasks that are no longer active."""
    config = get_config()
    with _open_store() as store:
        tasks = store.read(tasks_mod.list_tasks, project)
        active = {t.id for t in tasks if t.status in ("pending", "running", "impasse", "paused")}
        workers = WorkerLifecycleManager(store, config)
        try:
            result = workers.teardown_orphans(project, active)
        except (ValueError, GitError) as e:
            _fail(str(e))

    if not result["removed"] and not result["skipped"]:
        click.echo("No workspaces to clean up.")
        return
    for key in result["removed"]:
        click.echo(f"  Removed: {key}")
    for item in result["skipped"]:
        click.echo(f"  Skipped {item['key']}: {item['reason']}")


# ── Snapshot Commands ────────────────────────────────────────────────────────


@main.group("snapshot")
def snapshot_group():
    """Export and restore the knowledge graph."""
    pass


@snapshot_group.command("save")
@click.argument("path", required=False)
def snapshot_save(path):
    """Save a snapshot (to the snapshot directory if no path is given)."""
    config = get_config()
    with _open_store() as store:
        if path:
            written = store.save_snapshot(path)
        else:
            written = store.auto_save_snapshot(config.resolve(config.snapshot_dir))
        counts = store.counts()
    click.echo(f"Snapshot saved: {written} ({counts['nodes']} nodes, {counts['relationships']} relationships)")


@snapshot_group.command("load")
@click.argument("path", type=click.Path(exists=True))
def snapshot_load(path):
    """Replace the knowledge graph with a snapshot."""
    with _open_store() as store:
        try:
            result = store.load_snapshot(path)
        except snapshots_mod.SnapshotError as e:
            _fail(str(e))
    click.echo(f"Restored {result['nodes']} nodes and {result['relationships']} relationships")


@snapshot_group.command("list")
def snapshot_list():
    """List saved snapshots, newest first."""
    config = get_config()
    files = snapshots_mod.list_snapshots(config.resolve(config.snapshot_dir))
    if not files:
        click.echo("No snapshots found.")
        return
    for f in files:
        click.echo(f"  {f.name} ({f.stat().st_size} bytes)")


# ── Signal Commands ──────────────────────────────────────────────────────────


@main.group("signals")
def signals_group():
    """Inspect and maintain coordination signals."""
    pass


@signals_group.command("list")
@click.option("--kind", type=click.Choice(["guide", "warn"]), default=None)
@click.option("--role", default=None, help="Filter by worker role")
@click.option("--limit", default=20, type=int)
def signals_list(kind, role, limit):
    """List active signals, strongest first."""
    with _open_store() as store:
        signals = SignalCoordinator(store).query(kind=kind, role=role, limit=limit)
    if not signals:
        click.echo("No active signals.")
        return
    for s in signals:
        role_info = f" [{s.pattern.role}]" if s.pattern and s.pattern.role else ""
        click.echo(f"  {s.kind:5} {s.strength:.3f}{role_info} {s.context}")


@signals_group.command("decay")
def signals_decay():
    """Apply one decay cycle to every signal."""
    with _open_store() as store:
        result = SignalCoordinator(store).decay()
    click.echo(f"Decayed {result['updated']} signal(s), removed {result['expired']}")


@signals_group.command("analyze")
@click.option("--role", default=None, help="Restrict to one worker role")
def signals_analyze(role):
    """Show outcome correlations and temporal trends."""
    with _open_store() as store:
        coordinator = SignalCoordinator(store)
        correlations = coordinator.correlations(role)
        temporal = coordinator.temporal(role)

    click.echo("Correlations:")
    for c in correlations:
        p = c["pattern"]
        click.echo(
            f"  {p['stage']}/{p['outcome']}/{p['role']}/{p['complexity']}: "
            f"x{c['frequency']} strength {c['avg_strength']:.2f} -> {c['recommendation']}"
        )
    click.echo("Trends:")
    for t in temporal:
        click.echo(f"  {t['role']}: x{t['frequency']} strength {t['avg_strength']:.2f} ({t['trend']})")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the status API."""
    from swarm_orchestrator.web.app import run_server

    click.echo(f"Starting status API at http://{host}:{port}/api/health")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server for workers (stdio transport)."""
    from swarm_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _post_status(token: str, channel: str, project: str, status: dict):
    try:
        send_message(token, channel, f"Run finished for {project}", blocks=format_status_update(project, status))
    except Exception:
        logger.exception("Failed to post status for %s to %s", project, channel)


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "stage": task.stage,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "description": task.description,
        "retry_count": task.retry_count,
        "depends_on": task.depends_on,
    }


if __name__ == "__main__":
    main()
