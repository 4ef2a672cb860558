"""Whole-graph snapshot export, validation and restore."""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from swarm_orchestrator.db import graph

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0.0"
REQUIRED_FIELDS = ("version", "timestamp", "metadata", "nodes", "relationships")
BATCH_SIZE = 100


class SnapshotError(ValueError):
    """Raised for malformed snapshot documents."""


def export_snapshot(db: sqlite3.Connection) -> dict:
    """Serialise every node and relationship into a snapshot document."""
    nodes = db.execute("SELECT * FROM nodes ORDER BY created_at, id").fetchall()
    rels = db.execute("SELECT * FROM relationships ORDER BY id").fetchall()
    events = db.execute("SELECT * FROM task_events ORDER BY id").fetchall()
    return {
        "version": SNAPSHOT_VERSION,
        "timestamp": graph.now_iso(),
        "metadata": {
            "totalNodes": len(nodes),
            "totalRelationships": len(rels),
            "totalEvents": len(events),
            "nodeTypes": graph.node_type_counts(db),
        },
        "nodes": [
            {
                "id": row["id"],
                "labels": [row["label"]],
                "properties": {
                    **json.loads(row["properties"]),
                    "id": row["id"],
                    "project_id": row["project_id"],
                    "created_at": row["created_at"],
                    "updated_at": row["updated_at"],
                },
            }
            for row in nodes
        ],
        "relationships": [
            {
                "id": row["id"],
                "startNode": row["start_id"],
                "endNode": row["end_id"],
                "type": row["type"],
                "properties": {**json.loads(row["properties"]), "created_at": row["created_at"]},
            }
            for row in rels
        ],
        "events": [
            {
                "task_id": row["task_id"],
                "event_type": row["event_type"],
                "old_value": row["old_value"],
                "new_value": row["new_value"],
                "created_at": row["created_at"],
            }
            for row in events
        ],
    }


def validate_snapshot(doc) -> None:
    """Raise SnapshotError unless doc is a structurally valid snapshot."""
    if not isinstance(doc, dict):
        raise SnapshotError("Invalid snapshot format: document must be an object")
    missing = [f for f in REQUIRED_FIELDS if f not in doc]
    if missing:
        raise SnapshotError(
            f"Invalid snapshot format: missing required fields: {', '.join(missing)}"
        )
    if not isinstance(doc["nodes"], list) or not isinstance(doc["relationships"], list):
        raise SnapshotError("Invalid snapshot format: nodes and relationships must be arrays")

    node_ids = set()
    for i, node in enumerate(doc["nodes"]):
        if not isinstance(node, dict) or "id" not in node:
            raise SnapshotError(f"Invalid snapshot node at index {i}")
        labels = node.get("labels")
        if not isinstance(labels, list) or not labels:
            raise SnapshotError(f"Snapshot node {node['id']} has no labels")
        if not isinstance(node.get("properties", {}), dict):
            raise SnapshotError(f"Snapshot node {node['id']} has invalid properties")
        node_ids.add(node["id"])

    seen_rels = set()
    for i, rel in enumerate(doc["relationships"]):
        if not isinstance(rel, dict) or not all(k in rel for k in ("startNode", "endNode", "type")):
            raise SnapshotError(f"Invalid snapshot relationship at index {i}")
        if rel["startNode"] not in node_ids or rel["endNode"] not in node_ids:
            raise SnapshotError(
                f"Snapshot relationship {rel.get('id', i)} references an unknown node"
            )
        edge = (rel["startNode"], rel["endNode"], rel["type"])
        if edge in seen_rels:
            raise SnapshotError(
                f"Duplicate snapshot relationship {rel['type']} {rel['startNode']} -> {rel['endNode']}"
            )
        seen_rels.add(edge)

    # Older documents carry no event log
    events = doc.get("events", [])
    if not isinstance(events, list):
        raise SnapshotError("Invalid snapshot format: events must be an array")
    for i, event in enumerate(events):
        if not isinstance(event, dict) or not event.get("event_type"):
            raise SnapshotError(f"Invalid snapshot event at index {i}")
        if event.get("task_id") not in node_ids:
            raise SnapshotError(f"Snapshot event at index {i} references an unknown task")


def restore_snapshot(db: sqlite3.Connection, doc: dict) -> dict:
    """Replace the whole graph with the contents of a snapshot document.

    Validation runs first; nothing is touched if it fails. Run inside a
    write transaction so a mid-restore error rolls everything back.
    """
    validate_snapshot(doc)
    graph.clear_graph(db)

    nodes = doc["nodes"]
    for start in range(0, len(nodes), BATCH_SIZE):
        batch = nodes[start:start + BATCH_SIZE]
        db.executemany(
            """INSERT INTO nodes (id, label, project_id, properties, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [_node_params(node) for node in batch],
        )

    for rel in doc["relationships"]:
        props = dict(rel.get("properties") or {})
        created_at = props.pop("created_at", None)
        graph.create_relationship(
            db, rel["startNode"], rel["endNode"], rel["type"], props, created_at=created_at
        )

    db.executemany(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, created_at)
           VALUES (?, ?, ?, ?, COALESCE(?, strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')))""",
        [
            (e["task_id"], e["event_type"], e.get("old_value"), e.get("new_value"), e.get("created_at"))
            for e in doc.get("events", [])
        ],
    )

    restored = {
        "nodes": graph.count_nodes(db),
        "relationships": graph.count_relationships(db),
        "events": len(doc.get("events", [])),
    }
    logger.info(
        "Restored snapshot: %d nodes, %d relationships",
        restored["nodes"], restored["relationships"],
    )
    return restored


def _node_params(node: dict) -> tuple:
    props = dict(node.get("properties") or {})
    props.pop("id", None)
    project_id = props.pop("project_id", None)
    created_at = props.pop("created_at", None) or graph.now_iso()
    updated_at = props.pop("updated_at", None) or created_at
    return (
        node["id"],
        node["labels"][0],
        project_id,
        json.dumps(props),
        created_at,
        updated_at,
    )


# ── Files ────────────────────────────────────────────────────────────────────


def write_snapshot_file(doc: dict, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc, indent=2))
    return path


def read_snapshot_file(path: str | Path) -> dict:
    path = Path(path)
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot file is not valid JSON: {path}") from e


def auto_save_path(snapshot_dir: str | Path) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return Path(snapshot_dir) / f"auto-save-{stamp}.json"


def list_snapshots(snapshot_dir: str | Path) -> list[Path]:
    """Snapshot files in a directory, newest first."""
    directory = Path(snapshot_dir)
    if not directory.exists():
        return []
    files = [p for p in directory.glob("*.json") if p.is_file()]
    return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)
