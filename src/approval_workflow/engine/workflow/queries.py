"""Read-only views over persisted instances and tasks."""

from __future__ import annotations

from pydantic import BaseModel, Field

from approval_workflow.store.definition_store import DefinitionRepository
from approval_workflow.store.instance_store import InstanceStore

from .errors import DefinitionNotFoundError
from .graph import GraphCache
from .models import CopyRecord, FlowInstance, InstanceStatus, Task, TaskStatus
from .progress import NodeProgress, build_progress


class InstanceView(BaseModel):
    instance: FlowInstance
    tasks: list[Task] = Field(default_factory=list)
    copy_records: list[CopyRecord] = Field(default_factory=list)

    @property
    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.is_pending]


class WorkflowQueries:
    def __init__(
        self,
        *,
        store: InstanceStore,
        definitions: DefinitionRepository,
        graphs: GraphCache | None = None,
    ) -> None:
        self._store = store
        self._definitions = definitions
        self._graphs = graphs or GraphCache()

    def get_instance(self, instance_id: str) -> InstanceView:
        instance = self._store.load(instance_id)
        tasks = sorted(self._store.list_tasks(instance_id), key=lambda t: t.created_at)
        return InstanceView(
            instance=instance,
            tasks=tasks,
            copy_records=self._store.list_copy_records(instance_id),
        )

    def get_progress(self, instance_id: str) -> list[NodeProgress]:
        view = self.get_instance(instance_id)
        instance = view.instance
        record = self._definitions.load_definition(
            instance.definition_id, instance.definition_version
        )
        if record is None:
            raise DefinitionNotFoundError(instance.definition_id, instance.definition_version)
        graph = self._graphs.get(record)
        return build_progress(graph, view.instance, view.tasks, view.copy_records)

    def pending_tasks(self, user_id: str) -> list[Task]:
        return self._store.find_tasks(assignee_id=user_id, status=TaskStatus.PENDING)

    def completed_tasks(self, user_id: str) -> list[Task]:
        return self._store.find_tasks(assignee_id=user_id, status=TaskStatus.COMPLETED)

    def initiated_by(
        self, user_id: str, *, status: InstanceStatus | None = None
    ) -> list[FlowInstance]:
        return self._store.list_instances(initiator_id=user_id, status=status)
