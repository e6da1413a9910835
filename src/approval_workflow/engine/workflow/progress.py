"""Per-node progress of a flow instance, for display."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from .graph import ApprovalNode, CcNode, ConditionNode, EndNode, ProcessGraph, StartNode
from .models import (
    CopyRecord,
    FlowInstance,
    HistoryAction,
    InstanceStatus,
    Task,
    TaskResult,
    TaskStatus,
)

NodeProgressStatus = Literal["PENDING", "RUNNING", "COMPLETED", "SKIPPED"]


class TaskSummary(BaseModel):
    task_id: str
    task_no: str
    visit: int
    assignee_id: str
    status: TaskStatus
    result: TaskResult | None = None
    comment: str | None = None
    completed_at: str | None = None


class NodeProgress(BaseModel):
    node_id: str
    node_name: str
    node_type: str
    status: NodeProgressStatus
    result: TaskResult | None = None
    tasks: list[TaskSummary] = Field(default_factory=list)
    copy_recipients: list[str] = Field(default_factory=list)


def _node_type(node: object) -> str:
    if isinstance(node, StartNode):
        return "START"
    if isinstance(node, ApprovalNode):
        return "APPROVAL"
    if isinstance(node, CcNode):
        return "CC"
    if isinstance(node, ConditionNode):
        return "CONDITION"
    if isinstance(node, EndNode):
        return "END"
    return type(node).__name__


def build_progress(
    graph: ProcessGraph,
    instance: FlowInstance,
    tasks: Sequence[Task],
    copies: Sequence[CopyRecord] = (),
) -> list[NodeProgress]:
    """Derive a display status for every node of the instance's graph.

    A node is RUNNING while it is active, COMPLETED once it has been passed,
    and SKIPPED when it was auto-approved or passed over (a later node already
    ran, or the instance ended without reaching it).
    """

    visited: set[str] = set()
    auto_skipped: set[str] = set()
    for entry in instance.history:
        if entry.node_id is None:
            continue
        if entry.action == HistoryAction.AUTO_SKIP:
            auto_skipped.add(entry.node_id)
        elif entry.action in (
            HistoryAction.NODE_ACTIVATED,
            HistoryAction.CC,
            HistoryAction.ROUTE,
            HistoryAction.START,
        ):
            visited.add(entry.node_id)
    reached = visited | auto_skipped

    tasks_by_node: dict[str, list[Task]] = {}
    for task in tasks:
        tasks_by_node.setdefault(task.node_id, []).append(task)
    copies_by_node: dict[str, list[str]] = {}
    for record in copies:
        copies_by_node.setdefault(record.node_id, []).append(record.recipient_id)

    finished = instance.status.is_terminal
    progress: list[NodeProgress] = []
    for node_id in graph.topological_order():
        node = graph.node(node_id)
        node_tasks = sorted(tasks_by_node.get(node_id, []), key=lambda t: t.created_at)
        last_decision = next(
            (
                t
                for t in reversed(node_tasks)
                if t.status == TaskStatus.COMPLETED
                and t.result in (TaskResult.APPROVED, TaskResult.REJECTED)
            ),
            None,
        )

        status: NodeProgressStatus
        if node_id in instance.current_node_ids or any(t.is_pending for t in node_tasks):
            status = "RUNNING"
        elif isinstance(node, EndNode):
            ended = instance.status == InstanceStatus.COMPLETED or (
                instance.status == InstanceStatus.REJECTED and instance.ended_via_reject
            )
            if node_id in visited and ended:
                status = "COMPLETED"
            else:
                status = "SKIPPED" if finished else "PENDING"
        elif node_id in auto_skipped and node_id not in visited:
            status = "SKIPPED"
        elif node_id in visited:
            status = "COMPLETED"
        elif finished or any(graph.can_reach(node_id, other) for other in reached):
            status = "SKIPPED"
        else:
            status = "PENDING"

        progress.append(
            NodeProgress(
                node_id=node_id,
                node_name=graph.node_name(node_id),
                node_type=_node_type(node),
                status=status,
                result=last_decision.result if last_decision is not None else None,
                tasks=[
                    TaskSummary(
                        task_id=t.id,
                        task_no=t.task_no,
                        visit=t.visit,
                        assignee_id=t.assignee_id,
                        status=t.status,
                        result=t.result,
                        comment=t.comment,
                        completed_at=t.completed_at.isoformat() if t.completed_at else None,
                    )
                    for t in node_tasks
                ],
                copy_recipients=copies_by_node.get(node_id, []),
            )
        )
    return progress
