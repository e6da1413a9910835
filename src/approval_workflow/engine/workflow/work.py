from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from .events import EventType, WorkflowEvent
from .models import CopyRecord, FlowInstance, Task, TaskStatus


class InstanceWork:
    """Private working copy of one instance for the duration of a single operation.

    Everything an operation changes is staged here and written back with one
    store save. Nothing outside the unit of work is touched until then, so a
    failure part-way through leaves persisted state unchanged.
    """

    def __init__(self, instance: FlowInstance, tasks: Iterable[Task], *, now: datetime) -> None:
        self.instance = instance.model_copy(deep=True)
        self.now = now
        self._tasks: dict[str, Task] = {t.id: t.model_copy(deep=True) for t in tasks}
        self._dirty: list[str] = []
        self.new_copies: list[CopyRecord] = []
        self.events: list[WorkflowEvent] = []

    def task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def add_task(self, task: Task) -> Task:
        self._tasks[task.id] = task
        self.touch(task)
        return task

    def touch(self, task: Task) -> None:
        if task.id not in self._dirty:
            self._dirty.append(task.id)

    def tasks_for(self, node_id: str, visit: int | None = None) -> list[Task]:
        return [
            t
            for t in self._tasks.values()
            if t.node_id == node_id and (visit is None or t.visit == visit)
        ]

    def pending_tasks(self, node_id: str | None = None) -> list[Task]:
        return [
            t
            for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and (node_id is None or t.node_id == node_id)
        ]

    def all_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def changed_tasks(self) -> list[Task]:
        return [self._tasks[task_id] for task_id in self._dirty]

    def emit(self, event_type: EventType, **payload: object) -> None:
        self.events.append(
            WorkflowEvent(
                type=event_type,
                instance_id=self.instance.id,
                payload=payload,
                occurred_at=self.now,
            )
        )
