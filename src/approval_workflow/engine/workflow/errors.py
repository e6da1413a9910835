"""Workflow error taxonomy.

Structural errors (graph, definition) are raised loudly. Idempotency conflicts
(`TaskAlreadyCompletedError`) are declined operations: raising them never
leaves partial state behind.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import InstanceStatus, Task


class WorkflowError(Exception):
    """Base class for every error raised by the engine."""


class InvalidGraphError(WorkflowError):
    def __init__(self, definition_id: str, problems: list[str]) -> None:
        self.definition_id = definition_id
        self.problems = list(problems)
        joined = "; ".join(self.problems)
        super().__init__(f"Invalid flow graph for definition {definition_id!r}: {joined}")


class DefinitionNotFoundError(WorkflowError):
    def __init__(self, definition_id: str, version: int | None = None) -> None:
        self.definition_id = definition_id
        self.version = version
        label = definition_id if version is None else f"{definition_id} v{version}"
        super().__init__(f"Flow definition not found: {label!r}")


class DefinitionNotPublishedError(WorkflowError):
    def __init__(self, definition_id: str, status: str) -> None:
        self.definition_id = definition_id
        self.status = status
        super().__init__(f"Flow definition {definition_id!r} is not published (status={status})")


class InstanceNotFoundError(WorkflowError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Flow instance not found: {instance_id!r}")


class TaskNotFoundError(WorkflowError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id!r}")


class CopyRecordNotFoundError(WorkflowError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Copy record not found: {record_id!r}")


class TaskAlreadyCompletedError(WorkflowError):
    """Raised when a task is no longer PENDING. Nothing was changed."""

    def __init__(self, task: Task) -> None:
        self.task = task
        super().__init__(
            f"Task {task.task_no} is already {task.status.value.lower()}"
            + (f" ({task.result.value})" if task.result is not None else "")
        )


class InvalidStateError(WorkflowError):
    def __init__(self, instance_id: str, status: InstanceStatus, operation: str) -> None:
        self.instance_id = instance_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} flow instance {instance_id!r} in status {status.value}"
        )


class PermissionDeniedError(WorkflowError):
    pass


class ConditionEvaluationError(WorkflowError):
    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(f"Condition evaluation failed at node {node_id!r}: {message}")


class IllegalTransitionError(WorkflowError, ValueError):
    pass


class InvalidTaskOperationError(WorkflowError):
    """A transfer or countersign request that cannot be applied to the task."""
