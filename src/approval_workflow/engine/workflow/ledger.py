"""Task bookkeeping for approval nodes.

The ledger creates tasks when an approval node is visited, applies a task
decision, and reports whether the node has reached consensus. It never routes:
the executor decides what happens after a node settles.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta

from .definitions import ConsensusPolicy
from .errors import InvalidTaskOperationError, TaskAlreadyCompletedError
from .graph import ApprovalNode, NodeOutcome
from .models import Task, TaskResult, TaskStatus, TaskTransfer, generate_task_no
from .work import InstanceWork

logger = logging.getLogger(__name__)

_DECISIONS: frozenset[TaskResult] = frozenset({TaskResult.APPROVED, TaskResult.REJECTED})


@dataclass(frozen=True, slots=True)
class CompletionOutcome:
    node_satisfied: bool
    node_outcome: NodeOutcome | None = None
    created: list[Task] = field(default_factory=list)
    cancelled: list[Task] = field(default_factory=list)


def _require_pending(task: Task) -> None:
    if task.status != TaskStatus.PENDING:
        raise TaskAlreadyCompletedError(task)


class TaskLedger:
    def activate_node(
        self, work: InstanceWork, node: ApprovalNode, assignees: Sequence[str]
    ) -> list[Task]:
        """Open a new visit of `node` and create its tasks.

        SEQUENTIAL nodes get a single task for the first assignee; the rest are
        queued on the instance and released one approval at a time.
        """

        if not assignees:
            raise ValueError("activate_node requires at least one assignee")

        instance = work.instance
        visit = instance.visit_of(node.id) + 1
        instance.visits[node.id] = visit

        if node.consensus == ConsensusPolicy.SEQUENTIAL:
            first, rest = assignees[0], list(assignees[1:])
            instance.sequential_queues[node.id] = rest
            created = [self._new_task(work, node, first, visit)]
        else:
            instance.sequential_queues.pop(node.id, None)
            created = [self._new_task(work, node, user_id, visit) for user_id in assignees]

        logger.info(
            "Approval node activated",
            extra={
                "instance_id": instance.id,
                "node_id": node.id,
                "visit": visit,
                "consensus": node.consensus.value,
                "tasks": len(created),
            },
        )
        return created

    def complete_task(
        self,
        work: InstanceWork,
        node: ApprovalNode,
        task: Task,
        result: TaskResult,
        comment: str | None = None,
    ) -> CompletionOutcome:
        """Record an APPROVED/REJECTED decision and evaluate the node's consensus.

        Raises:
            TaskAlreadyCompletedError: `task` is not PENDING. `work` is untouched.
        """

        _require_pending(task)
        if result not in _DECISIONS:
            raise ValueError(f"complete_task expects APPROVED or REJECTED, got {result.value}")

        self._close(work, task, result, comment)
        siblings = [t for t in work.tasks_for(node.id, task.visit) if t.id != task.id]

        if result == TaskResult.REJECTED:
            # A single rejection settles the node under every policy.
            cancelled = self._cancel(work, siblings)
            work.instance.sequential_queues.pop(node.id, None)
            return CompletionOutcome(
                node_satisfied=True, node_outcome=NodeOutcome.REJECTED, cancelled=cancelled
            )

        if node.consensus == ConsensusPolicy.ANY:
            cancelled = self._cancel(work, siblings)
            return CompletionOutcome(
                node_satisfied=True, node_outcome=NodeOutcome.APPROVED, cancelled=cancelled
            )

        if any(t.is_pending for t in siblings):
            return CompletionOutcome(node_satisfied=False)

        if node.consensus == ConsensusPolicy.SEQUENTIAL:
            queue = work.instance.sequential_queues.get(node.id, [])
            if queue:
                next_user = queue.pop(0)
                created = [self._new_task(work, node, next_user, task.visit)]
                return CompletionOutcome(node_satisfied=False, created=created)
            work.instance.sequential_queues.pop(node.id, None)

        return CompletionOutcome(node_satisfied=True, node_outcome=NodeOutcome.APPROVED)

    def transfer(
        self,
        work: InstanceWork,
        task: Task,
        to_assignee_id: str,
        comment: str | None = None,
    ) -> Task:
        """Hand a pending task to another user. The task keeps its id."""

        _require_pending(task)
        if to_assignee_id == task.assignee_id:
            raise InvalidTaskOperationError(
                f"Task {task.task_no} is already assigned to {to_assignee_id}"
            )
        if any(t.assignee_id == to_assignee_id for t in self._pending_in_visit(work, task)):
            raise InvalidTaskOperationError(
                f"User {to_assignee_id} already has a pending task at node {task.node_id}"
            )
        if to_assignee_id in work.instance.sequential_queues.get(task.node_id, []):
            raise InvalidTaskOperationError(
                f"User {to_assignee_id} is already queued at node {task.node_id}"
            )

        task.transfers.append(
            TaskTransfer(
                from_assignee_id=task.assignee_id,
                to_assignee_id=to_assignee_id,
                comment=comment,
                at=work.now,
            )
        )
        task.assignee_id = to_assignee_id
        work.touch(task)
        return task

    def countersign(
        self,
        work: InstanceWork,
        node: ApprovalNode,
        task: Task,
        user_ids: Sequence[str],
        comment: str | None = None,
    ) -> list[Task]:
        """Close `task` as COUNTERSIGNED and bring `user_ids` into the node.

        Added users decide in place of the countersigning user. Under SEQUENTIAL
        they are placed at the front of the queue.
        """

        _require_pending(task)
        taken = {t.assignee_id for t in self._pending_in_visit(work, task)}
        taken.add(task.assignee_id)
        queued = work.instance.sequential_queues.get(node.id, [])

        added: list[str] = []
        for user_id in user_ids:
            if user_id and user_id not in taken and user_id not in added:
                added.append(user_id)
        if not added:
            raise InvalidTaskOperationError(
                f"Countersign on task {task.task_no} adds no new assignee"
            )

        self._close(work, task, TaskResult.COUNTERSIGNED, comment)

        if node.consensus == ConsensusPolicy.SEQUENTIAL:
            remaining = [u for u in queued if u not in added]
            first, rest = added[0], added[1:]
            work.instance.sequential_queues[node.id] = rest + remaining
            created = [self._new_task(work, node, first, task.visit, source_task_id=task.id)]
        else:
            created = [
                self._new_task(work, node, user_id, task.visit, source_task_id=task.id)
                for user_id in added
            ]
        return created

    def cancel_node(self, work: InstanceWork, node_id: str) -> list[Task]:
        work.instance.sequential_queues.pop(node_id, None)
        return self._cancel(work, work.pending_tasks(node_id))

    def cancel_pending(self, work: InstanceWork) -> list[Task]:
        return self._cancel(work, work.pending_tasks())

    def _pending_in_visit(self, work: InstanceWork, task: Task) -> list[Task]:
        return [
            t for t in work.tasks_for(task.node_id, task.visit) if t.is_pending and t.id != task.id
        ]

    def _new_task(
        self,
        work: InstanceWork,
        node: ApprovalNode,
        assignee_id: str,
        visit: int,
        *,
        source_task_id: str | None = None,
    ) -> Task:
        due_time = None
        if node.time_limit_hours is not None:
            due_time = work.now + timedelta(hours=node.time_limit_hours)
        task = Task(
            task_no=generate_task_no(work.now),
            flow_instance_id=work.instance.id,
            node_id=node.id,
            node_name=node.name,
            visit=visit,
            assignee_id=assignee_id,
            form_data_snapshot=copy.deepcopy(work.instance.form_data),
            due_time=due_time,
            created_at=work.now,
            source_task_id=source_task_id,
        )
        return work.add_task(task)

    def _close(
        self, work: InstanceWork, task: Task, result: TaskResult, comment: str | None
    ) -> None:
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.comment = comment
        task.completed_at = work.now
        work.touch(task)

    def _cancel(self, work: InstanceWork, tasks: Sequence[Task]) -> list[Task]:
        cancelled: list[Task] = []
        for t in tasks:
            if not t.is_pending:
                continue
            t.status = TaskStatus.CANCELLED
            t.completed_at = work.now
            work.touch(t)
            cancelled.append(t)
        return cancelled
