"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest

from approval_workflow.directory import DirectoryDocument, StaticDirectory
from approval_workflow.engine.workflow.assignees import AssigneeResolver
from approval_workflow.engine.workflow.copies import CopyRecordService
from approval_workflow.engine.workflow.definitions import DefinitionRecord
from approval_workflow.engine.workflow.events import EventOutbox, EventType, WorkflowEvent
from approval_workflow.engine.workflow.executor import ProcessExecutor
from approval_workflow.engine.workflow.graph import GraphCache
from approval_workflow.engine.workflow.models import Task
from approval_workflow.engine.workflow.queries import WorkflowQueries
from approval_workflow.store.definition_store import InMemoryDefinitionStore
from approval_workflow.store.instance_store import InMemoryInstanceStore


class RecordingSink:
    """Collects published events in memory."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def publish(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]


@dataclass
class Engine:
    executor: ProcessExecutor
    queries: WorkflowQueries
    copies: CopyRecordService
    definitions: InMemoryDefinitionStore
    store: InMemoryInstanceStore
    sink: RecordingSink

    def pending(self, instance_id: str, node_id: str | None = None) -> list[Task]:
        return [
            t
            for t in self.store.list_tasks(instance_id)
            if t.is_pending and (node_id is None or t.node_id == node_id)
        ]

    def task_of(self, instance_id: str, assignee_id: str) -> Task:
        for task in self.pending(instance_id):
            if task.assignee_id == assignee_id:
                return task
        raise AssertionError(f"no pending task for {assignee_id}")


@pytest.fixture
def directory() -> StaticDirectory:
    """A small org: alice initiates, mgr manages her, lead leads her department."""

    return StaticDirectory(
        DirectoryDocument.model_validate(
            {
                "users": [
                    {"id": "alice", "department_id": "ops", "manager_id": "mgr"},
                    {"id": "bob", "department_id": "ops"},
                    {"id": "carol", "roles": ["finance"]},
                    {"id": "dave", "roles": ["finance"]},
                    {"id": "erin"},
                    {"id": "frank"},
                    {"id": "mgr", "department_id": "ops"},
                    {"id": "lead", "department_id": "ops"},
                    {"id": "admin"},
                    {"id": "ghost", "active": False, "roles": ["finance"]},
                ],
                "departments": [{"id": "ops", "leader_id": "lead"}],
                "administrators": ["admin"],
            }
        )
    )


@pytest.fixture
def engine(directory: StaticDirectory) -> Engine:
    """An executor over in-memory stores, delivering events synchronously."""

    definitions = InMemoryDefinitionStore()
    store = InMemoryInstanceStore()
    sink = RecordingSink()
    graphs = GraphCache()
    executor = ProcessExecutor(
        definitions=definitions,
        store=store,
        resolver=AssigneeResolver(directory),
        outbox=EventOutbox([sink], asynchronous=False),
        graphs=graphs,
    )
    return Engine(
        executor=executor,
        queries=WorkflowQueries(store=store, definitions=definitions, graphs=graphs),
        copies=CopyRecordService(store=store),
        definitions=definitions,
        store=store,
        sink=sink,
    )


@pytest.fixture
def publish(engine: Engine) -> Callable[..., str]:
    """Register a PUBLISHED definition built from node and edge dicts."""

    def _publish(
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        *,
        definition_id: str = "leave",
        version: int = 1,
    ) -> str:
        record = DefinitionRecord.model_validate(
            {
                "id": definition_id,
                "name": definition_id.title(),
                "version": version,
                "status": "PUBLISHED",
                "nodes": nodes,
                "edges": edges,
            }
        )
        engine.definitions.add(record)
        return record.id

    return _publish
