"""KnowledgeStore: transactional access to the shared knowledge graph.

Connection-level operations live in the `projects`, `tasks`, `artifacts`
and `snapshots` modules. The store runs them inside transactions:

    store.write(tasks.create_task, "Build API", "demo")
    store.read(tasks.get_ready_tasks, "demo")
"""

import logging
from pathlib import Path

from swarm_orchestrator.core import artifacts, snapshots
from swarm_orchestrator.db import graph
from swarm_orchestrator.db.engine import init_db
from swarm_orchestrator.db.transactions import TransactionMetrics, TransactionRunner

logger = logging.getLogger(__name__)


class KnowledgeStore:
    def __init__(self, runner: TransactionRunner):
        self.runner = runner
        self._closed = False

    @classmethod
    def open(cls, db_path: str | Path, **runner_options) -> "KnowledgeStore":
        """Open (and initialise if needed) a store at db_path or ":memory:"."""
        return cls(TransactionRunner(init_db(db_path), **runner_options))

    # ── Transactions ─────────────────────────────────────────────────────────

    def read(self, fn, *args, **kwargs):
        return self.runner.read(lambda db: fn(db, *args, **kwargs))

    def write(self, fn, *args, **kwargs):
        return self.runner.write(lambda db: fn(db, *args, **kwargs))

    # ── Queries needing a consistent view ────────────────────────────────────

    def contract_coverage(self, contract_id: str) -> dict:
        return self.read(artifacts.contract_coverage, contract_id)

    def knowledge_graph(self, project_id: str) -> dict:
        return self.read(artifacts.get_knowledge_graph, project_id)

    def counts(self) -> dict:
        return self.read(lambda db: {
            "nodes": graph.count_nodes(db),
            "relationships": graph.count_relationships(db),
        })

    # ── Snapshots ────────────────────────────────────────────────────────────

    def export_snapshot(self) -> dict:
        return self.read(snapshots.export_snapshot)

    def restore_snapshot(self, doc: dict) -> dict:
        snapshots.validate_snapshot(doc)
        return self.write(snapshots.restore_snapshot, doc)

    def save_snapshot(self, path: str | Path) -> Path:
        doc = self.export_snapshot()
        written = snapshots.write_snapshot_file(doc, path)
        logger.info(
            "Saved snapshot to %s (%d nodes, %d relationships)",
            written, doc["metadata"]["totalNodes"], doc["metadata"]["totalRelationships"],
        )
        return written

    def load_snapshot(self, path: str | Path) -> dict:
        return self.restore_snapshot(snapshots.read_snapshot_file(path))

    def auto_save_snapshot(self, snapshot_dir: str | Path) -> Path:
        return self.save_snapshot(snapshots.auto_save_path(snapshot_dir))

    # ── Health ───────────────────────────────────────────────────────────────

    def health_check(self) -> bool:
        if self._closed:
            return False
        return self.runner.health_check()

    @property
    def metrics(self) -> TransactionMetrics:
        return self.runner.metrics

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        if self._closed:
            return
        self.runner.close()
        self._closed = True
