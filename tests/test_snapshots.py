import json
import os
import tempfile
from pathlib import Path

import pytest

from swarm_orchestrator.core import artifacts, snapshots
from swarm_orchestrator.core import projects as projects_mod
from swarm_orchestrator.core import tasks as tasks_mod
from swarm_orchestrator.core.knowledge import KnowledgeStore
from swarm_orchestrator.db.engine import MEMORY_DB


@pytest.fixture
def populated(store, project):
    t1 = store.write(tasks_mod.create_task, "Design schema", "demo")
    store.write(tasks_mod.create_task, "Implement schema", "demo", depends_on=[t1.id])
    c = store.write(artifacts.create_contract, "demo", "api", {"paths": {"/x": {"get": {}}}})
    store.write(artifacts.link_contract_to_task, c.id, t1.id)
    return store


@pytest.fixture
def other_store():
    s = KnowledgeStore.open(MEMORY_DB)
    yield s
    s.close()


class TestExport:
    def test_document_shape(self, populated):
        doc = populated.export_snapshot()
        assert doc["version"] == "1.0.0"
        assert doc["metadata"]["totalNodes"] == 4
        assert doc["metadata"]["totalRelationships"] == 2
        assert doc["metadata"]["nodeTypes"] == {"Project": 1, "Task": 2, "Contract": 1}
        node = next(n for n in doc["nodes"] if n["id"] == "design-schema")
        assert node["labels"] == ["Task"]
        assert node["properties"]["project_id"] == "demo"
        rel = doc["relationships"][0]
        assert {"startNode", "endNode", "type", "properties"} <= rel.keys()

    def test_event_log_included(self, populated):
        doc = populated.export_snapshot()
        assert doc["metadata"]["totalEvents"] == 2
        assert [e["event_type"] for e in doc["events"]] == ["created", "created"]
        assert doc["events"][0]["task_id"] == "design-schema"


class TestRestore:
    def test_round_trip(self, populated, other_store):
        doc = populated.export_snapshot()
        restored = other_store.restore_snapshot(doc)
        assert restored == {**populated.counts(), "events": 2}

        task = other_store.read(tasks_mod.get_task, "implement-schema")
        original = populated.read(tasks_mod.get_task, "implement-schema")
        assert task.depends_on == ["design-schema"]
        assert task.stage == original.stage
        assert task.created_at == original.created_at

    def test_event_log_restored(self, populated, other_store):
        populated.write(tasks_mod.update_task_status, "design-schema", "running")
        other_store.restore_snapshot(populated.export_snapshot())
        events = other_store.read(tasks_mod.get_task_events, "design-schema")
        assert [e.event_type for e in events] == ["created", "status_changed"]
        assert events[1].new_value == "running"

    def test_document_without_events_restores(self, populated, other_store):
        doc = populated.export_snapshot()
        del doc["events"]
        assert other_store.restore_snapshot(doc)["events"] == 0
        assert other_store.read(tasks_mod.get_task_events, "design-schema") == []

    def test_restore_replaces_existing_graph(self, populated, other_store):
        other_store.write(projects_mod.create_project, "stale", "Stale")
        other_store.restore_snapshot(populated.export_snapshot())
        assert other_store.read(projects_mod.get_project, "stale") is None
        assert other_store.counts()["nodes"] == 4

    def test_missing_relationships_rejected(self, populated):
        before = populated.counts()
        doc = populated.export_snapshot()
        del doc["relationships"]
        with pytest.raises(snapshots.SnapshotError, match="missing required fields: relationships"):
            populated.restore_snapshot(doc)
        assert populated.counts() == before

    def test_dangling_relationship_rejected(self, populated):
        doc = populated.export_snapshot()
        doc["relationships"].append(
            {"id": 99, "startNode": "design-schema", "endNode": "ghost", "type": "DEPENDS_ON"}
        )
        with pytest.raises(snapshots.SnapshotError, match="unknown node"):
            populated.restore_snapshot(doc)

    def test_duplicate_relationship_rejected(self, populated):
        before = populated.counts()
        doc = populated.export_snapshot()
        doc["relationships"].append(dict(doc["relationships"][0], id=99))
        with pytest.raises(snapshots.SnapshotError, match="Duplicate snapshot relationship"):
            populated.restore_snapshot(doc)
        assert populated.counts() == before

    def test_event_for_unknown_task_rejected(self, populated):
        doc = populated.export_snapshot()
        doc["events"].append({"task_id": "ghost", "event_type": "created"})
        with pytest.raises(snapshots.SnapshotError, match="ghost"):
            populated.restore_snapshot(doc)

    def test_node_without_labels_rejected(self):
        doc = {"version": "1.0.0", "timestamp": "x", "metadata": {},
               "nodes": [{"id": "a", "labels": []}], "relationships": []}
        with pytest.raises(snapshots.SnapshotError, match="no labels"):
            snapshots.validate_snapshot(doc)

    def test_non_object_rejected(self):
        with pytest.raises(snapshots.SnapshotError):
            snapshots.validate_snapshot([])


class TestFiles:
    def test_save_and_load(self, populated, other_store):
        with tempfile.TemporaryDirectory() as tmp:
            path = populated.save_snapshot(Path(tmp) / "nested" / "snap.json")
            assert json.loads(path.read_text())["metadata"]["totalNodes"] == 4
            assert other_store.load_snapshot(path) == {"nodes": 4, "relationships": 2, "events": 2}

    def test_invalid_json(self, other_store):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "bad.json"
            path.write_text("{not json")
            with pytest.raises(snapshots.SnapshotError, match="not valid JSON"):
                other_store.load_snapshot(path)

    def test_auto_save_and_list(self, populated):
        with tempfile.TemporaryDirectory() as tmp:
            first = populated.auto_save_snapshot(tmp)
            second = populated.auto_save_snapshot(tmp)
            assert first.name.startswith("auto-save-")
            os.utime(first, (1, 1))
            assert snapshots.list_snapshots(tmp) == [second, first]

    def test_list_missing_dir(self):
        assert snapshots.list_snapshots("/nonexistent/snapshots") == []
