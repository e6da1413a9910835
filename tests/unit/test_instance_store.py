"""Unit tests for instance and definition persistence."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from approval_workflow.engine.workflow.definitions import DefinitionRecord, DefinitionStatus
from approval_workflow.engine.workflow.errors import DefinitionNotFoundError, InstanceNotFoundError
from approval_workflow.engine.workflow.models import (
    CopyRecord,
    FlowInstance,
    InstanceStatus,
    Task,
    TaskStatus,
)
from approval_workflow.store.definition_store import (
    InMemoryDefinitionStore,
    JsonDefinitionStore,
    read_definition_file,
)
from approval_workflow.store.instance_store import (
    InMemoryInstanceStore,
    InstanceStore,
    JsonInstanceStore,
    _DocumentStore,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def _instance(initiator: str = "alice", *, at: datetime = T0) -> FlowInstance:
    return FlowInstance(
        instance_no="WF20240501ABCDEF",
        definition_id="leave",
        definition_version=1,
        initiator_id=initiator,
        status=InstanceStatus.RUNNING,
        start_time=at,
    )


def _task(instance: FlowInstance, assignee: str, *, at: datetime = T0) -> Task:
    return Task(
        task_no="TK20240501ABCDEF",
        flow_instance_id=instance.id,
        node_id="a",
        assignee_id=assignee,
        created_at=at,
    )


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> InstanceStore:
    if request.param == "memory":
        return InMemoryInstanceStore()
    return JsonInstanceStore(tmp_path / "state")


def test_save_and_load_roundtrip(store: InstanceStore) -> None:
    instance = _instance()
    task = _task(instance, "bob")
    copy = CopyRecord(flow_instance_id=instance.id, node_id="cc", recipient_id="erin")

    store.save(instance, [task], [copy])

    assert store.load(instance.id) == instance
    assert store.get_task(task.id) == task
    assert store.list_tasks(instance.id) == [task]
    assert store.list_copy_records(instance.id) == [copy]
    assert store.get_copy_record(copy.id) == copy


def test_save_upserts_tasks(store: InstanceStore) -> None:
    instance = _instance()
    first, second = _task(instance, "bob"), _task(instance, "carol")
    store.save(instance, [first, second])

    first.status = TaskStatus.COMPLETED
    instance.revision = 1
    store.save(instance, [first])

    stored = {t.assignee_id: t.status for t in store.list_tasks(instance.id)}
    assert stored == {"bob": TaskStatus.COMPLETED, "carol": TaskStatus.PENDING}
    assert store.load(instance.id).revision == 1


def test_loaded_objects_are_copies(store: InstanceStore) -> None:
    instance = _instance()
    store.save(instance)

    loaded = store.load(instance.id)
    loaded.current_node_ids.append("mutated")

    assert store.load(instance.id).current_node_ids == []


def test_missing_instance(store: InstanceStore) -> None:
    with pytest.raises(InstanceNotFoundError):
        store.load("nope")
    assert store.get_task("nope") is None
    assert store.list_tasks("nope") == []


def test_queries_filter_and_sort_newest_first(store: InstanceStore) -> None:
    older, newer = _instance(at=T0), _instance(at=T0 + timedelta(hours=1))
    other = _instance("bob")
    store.save(older, [_task(older, "bob", at=T0)])
    store.save(newer, [_task(newer, "bob", at=T0 + timedelta(hours=1))])
    store.save(other, [_task(other, "carol")])

    assert [i.id for i in store.list_instances(initiator_id="alice")] == [newer.id, older.id]
    assert [
        t.flow_instance_id for t in store.find_tasks(assignee_id="bob", status=TaskStatus.PENDING)
    ] == [newer.id, older.id]
    assert store.find_tasks(assignee_id="bob", status=TaskStatus.COMPLETED) == []
    assert store.list_instances(status=InstanceStatus.COMPLETED) == []


def test_save_copy_records_updates_read_flags(store: InstanceStore) -> None:
    instance = _instance()
    copy = CopyRecord(flow_instance_id=instance.id, node_id="cc", recipient_id="erin")
    store.save(instance, copy_records=[copy])

    copy.is_read = True
    store.save_copy_records([copy])

    assert store.find_copy_records(recipient_id="erin", is_read=False) == []
    assert [c.id for c in store.find_copy_records(recipient_id="erin", is_read=True)] == [copy.id]


def test_save_copy_records_for_unknown_instance(store: InstanceStore) -> None:
    orphan = CopyRecord(flow_instance_id="nope", node_id="cc", recipient_id="erin")

    with pytest.raises(InstanceNotFoundError):
        store.save_copy_records([orphan])


def test_json_store_writes_one_document_per_instance(tmp_path: Path) -> None:
    store = JsonInstanceStore(tmp_path / "state")
    instance = _instance()
    store.save(instance, [_task(instance, "bob")])

    files = list((tmp_path / "state").iterdir())
    assert [f.name for f in files] == [f"{instance.id}.json"]
    raw = json.loads(files[0].read_text(encoding="utf-8"))
    assert raw["instance"]["id"] == instance.id
    assert raw["tasks"][0]["assignee_id"] == "bob"

    reopened = JsonInstanceStore(tmp_path / "state")
    assert reopened.load(instance.id).initiator_id == "alice"


def test_json_store_skips_unreadable_documents(tmp_path: Path) -> None:
    root = tmp_path / "state"
    store = JsonInstanceStore(root)
    instance = _instance()
    store.save(instance)
    (root / "broken.json").write_text("{not json", encoding="utf-8")

    assert [i.id for i in store.list_instances()] == [instance.id]


def _definition(definition_id: str = "leave", version: int = 2) -> DefinitionRecord:
    return DefinitionRecord.model_validate(
        {
            "id": definition_id,
            "version": version,
            "status": "PUBLISHED",
            "nodes": [{"id": "start", "type": "START"}, {"id": "end", "type": "END"}],
            "edges": [{"source": "start", "target": "end"}],
        }
    )


def test_json_definition_store_roundtrip(tmp_path: Path) -> None:
    store = JsonDefinitionStore(tmp_path / "defs")
    path = store.save_definition(_definition())

    assert path == tmp_path / "defs" / "leave.json"
    assert (tmp_path / "defs" / "versions" / "leave.v2.json").exists()
    assert store.load_definition("leave") == _definition()
    assert store.load_definition("missing") is None
    assert [d.id for d in store.list_definitions()] == ["leave"]


def test_json_definition_store_ignores_mismatched_id(tmp_path: Path) -> None:
    store = JsonDefinitionStore(tmp_path)
    (tmp_path / "other.json").write_text(
        json.dumps(_definition("leave").model_dump(mode="json")), encoding="utf-8"
    )

    assert store.load_definition("other") is None


def test_read_definition_file_reports_problems(tmp_path: Path) -> None:
    bad_json = tmp_path / "a.json"
    bad_json.write_text("{", encoding="utf-8")
    bad_shape = tmp_path / "b.json"
    bad_shape.write_text(json.dumps({"nodes": "nope"}), encoding="utf-8")

    with pytest.raises(ValueError, match="invalid JSON"):
        read_definition_file(bad_json)
    with pytest.raises(ValueError, match="invalid flow definition"):
        read_definition_file(bad_shape)


def test_in_memory_definition_store_status_changes() -> None:
    store = InMemoryDefinitionStore([_definition()])

    updated = store.set_status("leave", DefinitionStatus.DISABLED)

    assert updated.status == DefinitionStatus.DISABLED
    reloaded = store.load_definition("leave")
    assert reloaded is not None
    assert reloaded.status == DefinitionStatus.DISABLED
    with pytest.raises(DefinitionNotFoundError):
        store.set_status("missing", DefinitionStatus.PUBLISHED)


def test_json_definition_store_keeps_earlier_versions(tmp_path: Path) -> None:
    store = JsonDefinitionStore(tmp_path)
    store.save_definition(_definition(version=1))
    store.save_definition(_definition(version=2))

    latest = store.load_definition("leave")
    assert latest is not None and latest.version == 2
    assert store.load_definition("leave", 1) == _definition(version=1)
    assert store.load_definition("leave", 2) == _definition(version=2)
    assert store.load_definition("leave", 3) is None
    assert [d.version for d in store.list_definitions()] == [2]


def test_json_definition_store_reads_unarchived_latest_by_version(tmp_path: Path) -> None:
    store = JsonDefinitionStore(tmp_path)
    (tmp_path / "leave.json").write_text(
        json.dumps(_definition(version=3).model_dump(mode="json")), encoding="utf-8"
    )

    assert store.load_definition("leave", 3) == _definition(version=3)
    assert store.load_definition("leave", 2) is None


def test_in_memory_definition_store_keeps_every_version() -> None:
    store = InMemoryDefinitionStore([_definition(version=1), _definition(version=2)])

    store.set_status("leave", DefinitionStatus.DISABLED)

    latest = store.load_definition("leave")
    assert latest is not None
    assert (latest.version, latest.status) == (2, DefinitionStatus.DISABLED)
    first = store.load_definition("leave", 1)
    assert first is not None
    assert first.status == DefinitionStatus.PUBLISHED
    assert store.load_definition("leave", 5) is None
    assert store.load_definition("missing", 1) is None


def test_document_store_base_cannot_be_instantiated() -> None:
    class Partial(_DocumentStore):
        def _documents(self):  # type: ignore[override]
            return iter(())

    with pytest.raises(TypeError):
        _DocumentStore()  # type: ignore[abstract]
    with pytest.raises(TypeError):
        Partial()  # type: ignore[abstract]
