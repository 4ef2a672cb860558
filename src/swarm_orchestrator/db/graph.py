"""Property-graph primitives over the nodes/relationships tables.

Every function takes an open connection and performs no transaction
management of its own; callers run them through the TransactionRunner.
"""

import dataclasses
import json
import sqlite3
import uuid
from datetime import datetime, timezone

from swarm_orchestrator.db.models import LABELS, RECORD_TYPES, Signal, SignalPattern

_DATETIME_FIELDS = {"created_at", "updated_at", "completed_at", "expires_at"}
# Columns kept outside the JSON property map
_COLUMN_FIELDS = {"id", "project_id", "created_at", "updated_at"}
# Derived from edges, never stored as properties
_DERIVED_FIELDS = {"depends_on"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _format_dt(val) -> str | None:
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.isoformat()
    return str(val)


# ── Nodes ────────────────────────────────────────────────────────────────────


def create_node(
    db: sqlite3.Connection,
    node_id: str,
    label: str,
    project_id: str | None,
    properties: dict,
    created_at: str | None = None,
    updated_at: str | None = None,
):
    ts = created_at or now_iso()
    db.execute(
        """INSERT INTO nodes (id, label, project_id, properties, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (node_id, label, project_id, json.dumps(properties), ts, updated_at or ts),
    )


def get_node(db: sqlite3.Connection, node_id: str, label: str | None = None) -> sqlite3.Row | None:
    if label:
        return db.execute(
            "SELECT * FROM nodes WHERE id = ? AND label = ?", (node_id, label)
        ).fetchone()
    return db.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()


def node_exists(db: sqlite3.Connection, node_id: str) -> bool:
    return db.execute("SELECT 1 FROM nodes WHERE id = ?", (node_id,)).fetchone() is not None


def update_node(db: sqlite3.Connection, node_id: str, properties: dict):
    """Merge properties into a node."""
    row = get_node(db, node_id)
    if row is None:
        raise ValueError(f"Node not found: {node_id}")
    merged = json.loads(row["properties"])
    merged.update(properties)
    db.execute(
        "UPDATE nodes SET properties = ?, updated_at = ? WHERE id = ?",
        (json.dumps(merged), now_iso(), node_id),
    )


def delete_node(db: sqlite3.Connection, node_id: str) -> bool:
    cur = db.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
    return cur.rowcount > 0


def find_nodes(
    db: sqlite3.Connection,
    label: str,
    project_id: str | None = None,
    where: dict | None = None,
    order_by: str = "created_at ASC",
) -> list[sqlite3.Row]:
    """Find nodes by label, optional project and property equality filters."""
    query = "SELECT * FROM nodes WHERE label = ?"
    params: list = [label]
    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)
    for key, value in (where or {}).items():
        query += " AND json_extract(properties, ?) = ?"
        params.extend([f"$.{key}", value])
    query += f" ORDER BY {order_by}"
    return db.execute(query, params).fetchall()


def count_nodes(db: sqlite3.Connection) -> int:
    return db.execute("SELECT COUNT(*) FROM nodes").fetchone()[0]


def node_type_counts(db: sqlite3.Connection) -> dict[str, int]:
    rows = db.execute(
        "SELECT label, COUNT(*) AS n FROM nodes GROUP BY label ORDER BY label"
    ).fetchall()
    return {r["label"]: r["n"] for r in rows}


# ── Relationships ────────────────────────────────────────────────────────────


def create_relationship(
    db: sqlite3.Connection,
    start_id: str,
    end_id: str,
    rel_type: str,
    properties: dict | None = None,
    created_at: str | None = None,
) -> int:
    """Create or replace the (start, end, type) relationship. Returns its id."""
    db.execute(
        """INSERT INTO relationships (start_id, end_id, type, properties, created_at)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT(start_id, end_id, type) DO UPDATE SET properties = excluded.properties""",
        (start_id, end_id, rel_type, json.dumps(properties or {}), created_at or now_iso()),
    )
    return db.execute(
        "SELECT id FROM relationships WHERE start_id = ? AND end_id = ? AND type = ?",
        (start_id, end_id, rel_type),
    ).fetchone()["id"]


def get_relationship(
    db: sqlite3.Connection, start_id: str, end_id: str, rel_type: str
) -> sqlite3.Row | None:
    return db.execute(
        "SELECT * FROM relationships WHERE start_id = ? AND end_id = ? AND type = ?",
        (start_id, end_id, rel_type),
    ).fetchone()


def delete_relationship(db: sqlite3.Connection, start_id: str, end_id: str, rel_type: str) -> bool:
    cur = db.execute(
        "DELETE FROM relationships WHERE start_id = ? AND end_id = ? AND type = ?",
        (start_id, end_id, rel_type),
    )
    return cur.rowcount > 0


def related(
    db: sqlite3.Connection,
    node_id: str,
    rel_type: str,
    direction: str = "out",
    label: str | None = None,
) -> list[sqlite3.Row]:
    """Nodes reachable over one edge of the given type.

    direction="out" follows start->end, "in" follows end->start.
    """
    if direction == "out":
        join, anchor = "r.end_id = n.id", "r.start_id"
    elif direction == "in":
        join, anchor = "r.start_id = n.id", "r.end_id"
    else:
        raise ValueError(f"Invalid direction: {direction}")
    query = (
        f"SELECT n.*, r.properties AS rel_properties FROM relationships r "
        f"JOIN nodes n ON {join} WHERE {anchor} = ? AND r.type = ?"
    )
    params: list = [node_id, rel_type]
    if label:
        query += " AND n.label = ?"
        params.append(label)
    query += " ORDER BY n.created_at ASC, n.id ASC"
    return db.execute(query, params).fetchall()


def list_relationships(db: sqlite3.Connection, node_ids: set[str] | None = None) -> list[sqlite3.Row]:
    rows = db.execute("SELECT * FROM relationships ORDER BY id").fetchall()
    if node_ids is None:
        return rows
    return [r for r in rows if r["start_id"] in node_ids and r["end_id"] in node_ids]


def count_relationships(db: sqlite3.Connection) -> int:
    return db.execute("SELECT COUNT(*) FROM relationships").fetchone()[0]


def clear_graph(db: sqlite3.Connection):
    db.execute("DELETE FROM task_events")
    db.execute("DELETE FROM relationships")
    db.execute("DELETE FROM nodes")


# ── Record conversion ────────────────────────────────────────────────────────


def save_record(db: sqlite3.Connection, record) -> None:
    """Insert a typed record as a node."""
    label = LABELS[type(record)]
    properties = record_properties(record)
    project_id = getattr(record, "project_id", None)
    if label == "Project":
        project_id = record.id
    create_node(
        db,
        record.id,
        label,
        project_id,
        properties,
        created_at=_format_dt(record.created_at),
        updated_at=_format_dt(getattr(record, "updated_at", None)),
    )


def record_properties(record) -> dict:
    """Property map stored for a record (everything but the column fields)."""
    props = {}
    for f in dataclasses.fields(record):
        if f.name in _COLUMN_FIELDS or f.name in _DERIVED_FIELDS:
            continue
        value = getattr(record, f.name)
        if f.name in _DATETIME_FIELDS:
            value = _format_dt(value)
        elif isinstance(value, SignalPattern):
            value = value.to_dict()
        props[f.name] = value
    return props


def row_to_record(row: sqlite3.Row):
    """Build the typed record for a node row.

    Properties that the record type does not declare are folded into its
    metadata map.
    """
    cls = RECORD_TYPES[row["label"]]
    props = json.loads(row["properties"])
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs: dict = {"id": row["id"]}
    if "project_id" in names:
        kwargs["project_id"] = row["project_id"]
    extra = {}
    for key, value in props.items():
        if key in names and key not in _COLUMN_FIELDS and key not in _DERIVED_FIELDS:
            kwargs[key] = parse_dt(value) if key in _DATETIME_FIELDS else value
        else:
            extra[key] = value
    if extra:
        kwargs["metadata"] = {**(kwargs.get("metadata") or {}), **extra}
    kwargs["created_at"] = parse_dt(row["created_at"])
    if "updated_at" in names:
        kwargs["updated_at"] = parse_dt(row["updated_at"])
    if cls is Signal:
        kwargs["pattern"] = SignalPattern.from_dict(kwargs.get("pattern"))
    return cls(**kwargs)


def get_record(db: sqlite3.Connection, record_type: type, record_id: str):
    row = get_node(db, record_id, LABELS[record_type])
    if row is None:
        return None
    return row_to_record(row)


def list_records(
    db: sqlite3.Connection,
    record_type: type,
    project_id: str | None = None,
    where: dict | None = None,
) -> list:
    rows = find_nodes(db, LABELS[record_type], project_id=project_id, where=where)
    return [row_to_record(r) for r in rows]
