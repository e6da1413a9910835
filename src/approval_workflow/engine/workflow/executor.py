"""Process executor: drives flow instances through their process graph.

Every public operation follows the same shape:

1. take the per-instance lock
2. load the instance and its tasks into an :class:`InstanceWork`
3. apply the operation and route the instance as far as it can go
4. persist the unit of work with a single store save
5. hand the staged events to the outbox

If any step before the save raises, nothing is persisted and no event is
published.

Routing model
-------------
* A settled node follows its NORMAL edges (or its REJECT edges when it settled
  as REJECTED). Several NORMAL edges fan out into parallel branches.
* A node with more than one incoming forward edge is a join. Arrivals are
  parked on the instance and the join fires once no active node (and no other
  parked join) can still reach it.
* END closes a branch. When no active node and no parked join remain, the
  instance is COMPLETED, or REJECTED if any branch arrived along a REJECT path.
* A rejected approval node with a REJECT_TO edge re-opens the upstream node
  with a fresh visit. Without REJECT_TO or REJECT edges, a rejection rejects
  the whole instance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, assert_never

from approval_workflow.store.definition_store import DefinitionRepository
from approval_workflow.store.instance_store import InstanceStore

from .assignees import AssigneeResolver
from .definitions import AssignRule, EmptyAssigneeAction
from .errors import (
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    InvalidGraphError,
    InvalidStateError,
    InvalidTaskOperationError,
    PermissionDeniedError,
    TaskAlreadyCompletedError,
    TaskNotFoundError,
)
from .events import EventOutbox, EventType
from .graph import (
    ApprovalNode,
    CcNode,
    ConditionNode,
    EndNode,
    GraphCache,
    Node,
    NodeOutcome,
    ProcessGraph,
    StartNode,
)
from .ledger import TaskLedger
from .locks import InstanceLocks
from .models import (
    CopyRecord,
    FlowInstance,
    HistoryAction,
    InstanceStatus,
    Task,
    TaskResult,
    TaskStatus,
    generate_instance_no,
    utc_now,
)
from .state_machine import transition
from .work import InstanceWork

logger = logging.getLogger(__name__)

_FINAL_EVENTS: dict[InstanceStatus, EventType] = {
    InstanceStatus.COMPLETED: EventType.FLOW_COMPLETED,
    InstanceStatus.REJECTED: EventType.FLOW_REJECTED,
    InstanceStatus.CANCELLED: EventType.FLOW_CANCELLED,
    InstanceStatus.TERMINATED: EventType.FLOW_TERMINATED,
}


@dataclass(frozen=True, slots=True)
class TaskCompletion:
    """What a task decision did to its node and instance."""

    task: Task
    node_satisfied: bool
    node_outcome: NodeOutcome | None
    instance: FlowInstance


class ProcessExecutor:
    def __init__(
        self,
        *,
        definitions: DefinitionRepository,
        store: InstanceStore,
        resolver: AssigneeResolver,
        outbox: EventOutbox,
        graphs: GraphCache | None = None,
        locks: InstanceLocks | None = None,
        ledger: TaskLedger | None = None,
        allow_cancel_after_approval: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definitions = definitions
        self._store = store
        self._resolver = resolver
        self._outbox = outbox
        self._graphs = graphs or GraphCache()
        self._locks = locks or InstanceLocks()
        self._ledger = ledger or TaskLedger()
        self._allow_cancel_after_approval = allow_cancel_after_approval
        self._clock = clock

    # ------------------------------------------------------------------
    # Public operations

    def start_flow(
        self,
        definition_id: str,
        *,
        initiator_id: str,
        form_data: Mapping[str, Any] | None = None,
        title: str | None = None,
        business_key: str | None = None,
    ) -> FlowInstance:
        """Create an instance of a published definition and route it from START.

        Raises:
            DefinitionNotFoundError: no definition with that id.
            DefinitionNotPublishedError: the definition is not PUBLISHED.
            InvalidGraphError: the definition is not a valid graph.
            ConditionEvaluationError: a CONDITION node could not be evaluated.
        """

        record = self._definitions.load_definition(definition_id)
        if record is None:
            raise DefinitionNotFoundError(definition_id)
        if not record.is_published:
            raise DefinitionNotPublishedError(definition_id, record.status.value)
        graph = self._graphs.get(record)

        now = self._clock()
        instance = FlowInstance(
            instance_no=generate_instance_no(now),
            definition_id=record.id,
            definition_version=record.version,
            title=title or record.name or record.id,
            business_key=business_key,
            form_data=dict(form_data or {}),
            initiator_id=initiator_id,
            start_time=now,
        )

        with self._locks.hold(instance.id):
            work = InstanceWork(instance, (), now=now)
            previous = transition(instance=work.instance, to=InstanceStatus.RUNNING, now=now)
            work.instance.record(
                HistoryAction.START,
                at=now,
                node_id=graph.start_node_id,
                operator_id=initiator_id,
                from_status=previous.value,
                to_status=InstanceStatus.RUNNING.value,
            )
            work.emit(
                EventType.FLOW_STARTED,
                instanceNo=work.instance.instance_no,
                definitionId=record.id,
                definitionVersion=record.version,
                initiatorId=initiator_id,
                businessKey=business_key,
            )
            self._route(work, graph, graph.start_node_id, NodeOutcome.APPROVED, rejected=False)
            self._settle(work, graph)
            self._commit(work, operation="start_flow")

        logger.info(
            "Flow started",
            extra={
                "instance_id": work.instance.id,
                "instance_no": work.instance.instance_no,
                "definition_id": record.id,
                "status": work.instance.status.value,
            },
        )
        return work.instance.model_copy(deep=True)

    def complete_task(
        self,
        task_id: str,
        result: TaskResult,
        *,
        comment: str | None = None,
        operator_id: str | None = None,
        transfer_to: str | None = None,
        countersign_with: Sequence[str] = (),
    ) -> TaskCompletion:
        """Apply a decision to a pending task.

        APPROVED/REJECTED settle the task and may settle its node. TRANSFERRED
        needs `transfer_to`; COUNTERSIGNED needs `countersign_with`. Neither of
        those settles the node.

        Raises:
            TaskNotFoundError: unknown task id.
            TaskAlreadyCompletedError: the task is no longer PENDING. Nothing changed.
            PermissionDeniedError: `operator_id` is not the task's assignee.
        """

        if result == TaskResult.TRANSFERRED:
            if not transfer_to:
                raise InvalidTaskOperationError("TRANSFERRED requires a transfer target")
            return self.transfer(
                task_id, transfer_to, comment=comment, operator_id=operator_id
            )
        if result == TaskResult.COUNTERSIGNED:
            if not countersign_with:
                raise InvalidTaskOperationError("COUNTERSIGNED requires at least one user")
            return self.countersign(
                task_id, countersign_with, comment=comment, operator_id=operator_id
            )

        instance_id = self._instance_id_of(task_id)
        with self._locks.hold(instance_id):
            work, task = self._open_for_task(instance_id, task_id, operator_id)
            graph = self._graph_for(work.instance)
            node = self._approval_node(graph, task)

            outcome = self._ledger.complete_task(work, node, task, result, comment)
            approved = result == TaskResult.APPROVED
            work.instance.record(
                HistoryAction.APPROVE if approved else HistoryAction.REJECT,
                at=work.now,
                node_id=node.id,
                task_id=task.id,
                operator_id=operator_id or task.assignee_id,
                comment=comment,
            )
            work.emit(
                EventType.TASK_APPROVED if approved else EventType.TASK_REJECTED,
                taskId=task.id,
                taskNo=task.task_no,
                nodeId=node.id,
                assigneeId=task.assignee_id,
                comment=comment,
            )
            self._announce_tasks(work, outcome.created)

            if outcome.node_satisfied:
                assert outcome.node_outcome is not None
                on_reject_path = node.id in work.instance.rejected_nodes
                self._leave(work, node.id)
                self._route(
                    work, graph, node.id, outcome.node_outcome, rejected=on_reject_path
                )
                self._settle(work, graph)

            self._commit(work, operation="complete_task")

        logger.info(
            "Task completed",
            extra={
                "instance_id": instance_id,
                "task_id": task_id,
                "result": result.value,
                "node_satisfied": outcome.node_satisfied,
                "instance_status": work.instance.status.value,
            },
        )
        return TaskCompletion(
            task=task.model_copy(deep=True),
            node_satisfied=outcome.node_satisfied,
            node_outcome=outcome.node_outcome,
            instance=work.instance.model_copy(deep=True),
        )

    def approve(
        self, task_id: str, *, comment: str | None = None, operator_id: str | None = None
    ) -> TaskCompletion:
        return self.complete_task(
            task_id, TaskResult.APPROVED, comment=comment, operator_id=operator_id
        )

    def reject(
        self, task_id: str, *, comment: str | None = None, operator_id: str | None = None
    ) -> TaskCompletion:
        return self.complete_task(
            task_id, TaskResult.REJECTED, comment=comment, operator_id=operator_id
        )

    def transfer(
        self,
        task_id: str,
        to_user_id: str,
        *,
        comment: str | None = None,
        operator_id: str | None = None,
    ) -> TaskCompletion:
        """Re-target a pending task to another user. The node stays open."""

        self._require_known_users([to_user_id])
        instance_id = self._instance_id_of(task_id)
        with self._locks.hold(instance_id):
            work, task = self._open_for_task(instance_id, task_id, operator_id)
            graph = self._graph_for(work.instance)
            node = self._approval_node(graph, task)
            from_user = task.assignee_id

            self._ledger.transfer(work, task, to_user_id, comment)
            work.instance.record(
                HistoryAction.TRANSFER,
                at=work.now,
                node_id=node.id,
                task_id=task.id,
                operator_id=operator_id or from_user,
                comment=comment,
            )
            work.emit(
                EventType.TASK_TRANSFERRED,
                taskId=task.id,
                taskNo=task.task_no,
                nodeId=node.id,
                fromUserId=from_user,
                toUserId=to_user_id,
                comment=comment,
            )
            self._commit(work, operation="transfer")

        logger.info(
            "Task transferred",
            extra={"instance_id": instance_id, "task_id": task_id, "to_user_id": to_user_id},
        )
        return TaskCompletion(
            task=task.model_copy(deep=True),
            node_satisfied=False,
            node_outcome=None,
            instance=work.instance.model_copy(deep=True),
        )

    def countersign(
        self,
        task_id: str,
        user_ids: Sequence[str],
        *,
        comment: str | None = None,
        operator_id: str | None = None,
    ) -> TaskCompletion:
        """Bring additional approvers into the task's node in place of its assignee."""

        self._require_known_users(user_ids)
        instance_id = self._instance_id_of(task_id)
        with self._locks.hold(instance_id):
            work, task = self._open_for_task(instance_id, task_id, operator_id)
            graph = self._graph_for(work.instance)
            node = self._approval_node(graph, task)

            created = self._ledger.countersign(work, node, task, user_ids, comment)
            work.instance.record(
                HistoryAction.COUNTERSIGN,
                at=work.now,
                node_id=node.id,
                task_id=task.id,
                operator_id=operator_id or task.assignee_id,
                comment=comment,
            )
            work.emit(
                EventType.TASK_COUNTERSIGNED,
                taskId=task.id,
                taskNo=task.task_no,
                nodeId=node.id,
                addedUserIds=[t.assignee_id for t in created],
                comment=comment,
            )
            self._announce_tasks(work, created)
            self._commit(work, operation="countersign")

        logger.info(
            "Task countersigned",
            extra={"instance_id": instance_id, "task_id": task_id, "added": len(created)},
        )
        return TaskCompletion(
            task=task.model_copy(deep=True),
            node_satisfied=False,
            node_outcome=None,
            instance=work.instance.model_copy(deep=True),
        )

    def urge(self, task_id: str, *, operator_id: str, comment: str | None = None) -> Task:
        """Remind the assignee of a pending task. Only the initiator may urge."""

        instance_id = self._instance_id_of(task_id)
        with self._locks.hold(instance_id):
            work = self._open(instance_id)
            task = self._task_in(work, task_id)
            if not task.is_pending:
                raise TaskAlreadyCompletedError(task)
            if operator_id != work.instance.initiator_id:
                raise PermissionDeniedError("Only the initiator can urge a task")

            work.instance.record(
                HistoryAction.URGE,
                at=work.now,
                node_id=task.node_id,
                task_id=task.id,
                operator_id=operator_id,
                comment=comment,
            )
            work.emit(
                EventType.TASK_URGED,
                taskId=task.id,
                taskNo=task.task_no,
                assigneeId=task.assignee_id,
                operatorId=operator_id,
                comment=comment,
            )
            self._commit(work, operation="urge")
        return task.model_copy(deep=True)

    def cancel(
        self, instance_id: str, *, operator_id: str, reason: str | None = None
    ) -> FlowInstance:
        """Withdraw a RUNNING instance. Only the initiator may cancel."""

        with self._locks.hold(instance_id):
            work = self._open(instance_id)
            instance = work.instance
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidStateError(instance.id, instance.status, "cancel")
            if operator_id != instance.initiator_id:
                raise PermissionDeniedError("Only the initiator can cancel a flow instance")
            if not self._allow_cancel_after_approval and any(
                t.status == TaskStatus.COMPLETED for t in work.all_tasks()
            ):
                raise InvalidStateError(instance.id, instance.status, "cancel after approval")

            self._finish(
                work,
                InstanceStatus.CANCELLED,
                remark=reason or "Cancelled by initiator",
                action=HistoryAction.CANCEL,
                operator_id=operator_id,
            )
            self._commit(work, operation="cancel")
        return work.instance.model_copy(deep=True)

    def terminate(
        self, instance_id: str, *, operator_id: str | None = None, reason: str | None = None
    ) -> FlowInstance:
        """Administratively end any non-terminal instance."""

        with self._locks.hold(instance_id):
            work = self._open(instance_id)
            instance = work.instance
            if instance.status.is_terminal:
                raise InvalidStateError(instance.id, instance.status, "terminate")
            self._finish(
                work,
                InstanceStatus.TERMINATED,
                remark=reason or "Terminated by administrator",
                action=HistoryAction.TERMINATE,
                operator_id=operator_id,
            )
            self._commit(work, operation="terminate")
        return work.instance.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Unit of work

    def _instance_id_of(self, task_id: str) -> str:
        task = self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task.flow_instance_id

    def _open(self, instance_id: str) -> InstanceWork:
        instance = self._store.load(instance_id)
        tasks = self._store.list_tasks(instance_id)
        return InstanceWork(instance, tasks, now=self._clock())

    def _task_in(self, work: InstanceWork, task_id: str) -> Task:
        task = work.task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _open_for_task(
        self, instance_id: str, task_id: str, operator_id: str | None
    ) -> tuple[InstanceWork, Task]:
        work = self._open(instance_id)
        # Re-read under the lock: a concurrent call may have settled the task.
        task = self._task_in(work, task_id)
        if not task.is_pending:
            logger.info(
                "Declined operation on settled task",
                extra={"instance_id": instance_id, "task_id": task_id, "status": task.status.value},
            )
            raise TaskAlreadyCompletedError(task)
        if operator_id is not None and operator_id != task.assignee_id:
            raise PermissionDeniedError(f"User {operator_id} is not the assignee of {task.task_no}")
        if work.instance.status != InstanceStatus.RUNNING:
            raise InvalidStateError(work.instance.id, work.instance.status, "complete a task of")
        return work, task

    def _commit(self, work: InstanceWork, *, operation: str) -> None:
        work.instance.revision += 1
        self._store.save(work.instance, work.changed_tasks(), work.new_copies)
        logger.debug(
            "Unit of work committed",
            extra={
                "instance_id": work.instance.id,
                "operation": operation,
                "revision": work.instance.revision,
                "tasks": len(work.changed_tasks()),
                "copies": len(work.new_copies),
                "events": len(work.events),
            },
        )
        self._outbox.dispatch(list(work.events))

    def _graph_for(self, instance: FlowInstance) -> ProcessGraph:
        # An instance always runs the version it was started on.
        record = self._definitions.load_definition(
            instance.definition_id, instance.definition_version
        )
        if record is None:
            raise DefinitionNotFoundError(instance.definition_id, instance.definition_version)
        return self._graphs.get(record)

    def _approval_node(self, graph: ProcessGraph, task: Task) -> ApprovalNode:
        node = graph.node(task.node_id)
        if not isinstance(node, ApprovalNode):
            raise InvalidGraphError(graph.definition_id, [f"task node {node.id!r} is not APPROVAL"])
        return node

    def _require_known_users(self, user_ids: Sequence[str]) -> None:
        wanted = [u for u in user_ids if u]
        known = set(self._resolver.known_users(wanted))
        missing = [u for u in wanted if u not in known]
        if missing or not wanted:
            raise InvalidTaskOperationError(
                "Unknown or inactive user(s): " + (", ".join(missing) or "<none>")
            )

    # ------------------------------------------------------------------
    # Routing

    def _route(
        self,
        work: InstanceWork,
        graph: ProcessGraph,
        node_id: str,
        outcome: NodeOutcome,
        *,
        rejected: bool,
    ) -> None:
        """Move on from a settled node."""

        if work.instance.status.is_terminal:
            return

        if outcome == NodeOutcome.REJECTED:
            back_to = graph.reject_target(node_id)
            if back_to is not None:
                self._reject_to(work, graph, node_id, back_to)
                return
            targets = graph.next_nodes(node_id, work.instance.form_data, NodeOutcome.REJECTED)
            if not targets:
                self._finish(
                    work,
                    InstanceStatus.REJECTED,
                    remark=f"Rejected at {graph.node_name(node_id)}",
                    action=HistoryAction.REJECT,
                    node_id=node_id,
                )
                return
            rejected = True
        else:
            targets = graph.next_nodes(node_id, work.instance.form_data, NodeOutcome.APPROVED)

        for target in targets:
            self._arrive(work, graph, target, via=node_id, rejected=rejected)

    def _reject_to(
        self, work: InstanceWork, graph: ProcessGraph, from_node_id: str, back_to: str
    ) -> None:
        instance = work.instance
        # Anything downstream of the re-opened node will be visited again.
        for active in list(instance.current_node_ids):
            if graph.can_reach(back_to, active):
                self._ledger.cancel_node(work, active)
                self._leave(work, active)
        for parked in list(instance.join_arrivals):
            if graph.can_reach(back_to, parked):
                self._unpark(work, parked)

        instance.record(
            HistoryAction.REJECT_TO,
            at=work.now,
            node_id=back_to,
            comment=f"Sent back from {graph.node_name(from_node_id)}",
        )
        self._enter(work, graph, graph.node(back_to), rejected=False)

    def _arrive(
        self, work: InstanceWork, graph: ProcessGraph, node_id: str, *, via: str, rejected: bool
    ) -> None:
        if work.instance.status.is_terminal:
            return
        node = graph.node(node_id)
        if graph.forward_in_degree(node_id) > 1 and not isinstance(node, EndNode):
            arrivals = work.instance.join_arrivals.setdefault(node_id, [])
            arrivals.append(via)
            if rejected and node_id not in work.instance.rejected_joins:
                work.instance.rejected_joins.append(node_id)
            return
        self._enter(work, graph, node, rejected=rejected)

    def _enter(
        self, work: InstanceWork, graph: ProcessGraph, node: Node, *, rejected: bool
    ) -> None:
        if work.instance.status.is_terminal:
            return

        if isinstance(node, StartNode):
            raise InvalidGraphError(graph.definition_id, ["START node re-entered"])
        elif isinstance(node, ApprovalNode):
            self._activate_approval(work, graph, node, rejected=rejected)
        elif isinstance(node, CcNode):
            self._create_copies(work, node.id, node.cc_rule, task_id=None)
            self._route(work, graph, node.id, NodeOutcome.APPROVED, rejected=rejected)
        elif isinstance(node, ConditionNode):
            targets = graph.next_nodes(node.id, work.instance.form_data)
            work.instance.record(
                HistoryAction.ROUTE,
                at=work.now,
                node_id=node.id,
                comment=f"-> {', '.join(targets)}",
            )
            for target in targets:
                self._arrive(work, graph, target, via=node.id, rejected=rejected)
        elif isinstance(node, EndNode):
            if rejected:
                work.instance.ended_via_reject = True
            work.instance.record(HistoryAction.NODE_ACTIVATED, at=work.now, node_id=node.id)
        else:
            assert_never(node)

    def _activate_approval(
        self, work: InstanceWork, graph: ProcessGraph, node: ApprovalNode, *, rejected: bool
    ) -> None:
        instance = work.instance
        if node.id in instance.current_node_ids:
            self._ledger.cancel_node(work, node.id)
            self._leave(work, node.id)

        assignees = self._resolver.resolve(node.assign_rule, instance)
        if not assignees:
            action = node.empty_assignee_action
            if action == EmptyAssigneeAction.TO_ADMIN:
                admins = self._resolver.administrators()
                if admins:
                    assignees = admins[:1]
                    instance.record(
                        HistoryAction.TO_ADMIN,
                        at=work.now,
                        node_id=node.id,
                        comment=f"No assignee resolved; routed to administrator {admins[0]}",
                    )
            elif action == EmptyAssigneeAction.ERROR:
                remark = f"No assignee could be resolved for {graph.node_name(node.id)}"
                logger.warning(
                    "Empty assignee set; terminating instance",
                    extra={"instance_id": instance.id, "node_id": node.id},
                )
                self._finish(
                    work,
                    InstanceStatus.TERMINATED,
                    remark=remark,
                    action=HistoryAction.TERMINATE,
                    node_id=node.id,
                )
                return

        if not assignees:
            instance.visits[node.id] = instance.visit_of(node.id) + 1
            instance.record(
                HistoryAction.AUTO_SKIP,
                at=work.now,
                node_id=node.id,
                comment="No assignee resolved; node approved automatically",
            )
            logger.info(
                "Approval node skipped",
                extra={"instance_id": instance.id, "node_id": node.id},
            )
            self._route(work, graph, node.id, NodeOutcome.APPROVED, rejected=rejected)
            return

        tasks = self._ledger.activate_node(work, node, assignees)
        instance.current_node_ids.append(node.id)
        if rejected:
            instance.rejected_nodes.append(node.id)
        instance.record(HistoryAction.NODE_ACTIVATED, at=work.now, node_id=node.id)
        work.emit(
            EventType.NODE_ACTIVATED,
            nodeId=node.id,
            nodeName=node.name,
            visit=instance.visit_of(node.id),
            assigneeIds=list(assignees),
        )
        self._announce_tasks(work, tasks)
        if node.cc_rule is not None:
            self._create_copies(work, node.id, node.cc_rule, task_id=tasks[0].id)

    def _create_copies(
        self, work: InstanceWork, node_id: str, rule: AssignRule, *, task_id: str | None
    ) -> list[CopyRecord]:
        recipients = self._resolver.resolve(rule, work.instance)
        records = [
            CopyRecord(
                flow_instance_id=work.instance.id,
                node_id=node_id,
                task_id=task_id,
                recipient_id=user_id,
                created_at=work.now,
            )
            for user_id in recipients
        ]
        work.new_copies.extend(records)
        work.instance.record(
            HistoryAction.CC,
            at=work.now,
            node_id=node_id,
            task_id=task_id,
            comment=f"Copied to {len(records)} recipient(s)",
        )
        for record in records:
            work.emit(
                EventType.CC_CREATED,
                copyRecordId=record.id,
                nodeId=node_id,
                recipientId=record.recipient_id,
            )
        return records

    def _settle(self, work: InstanceWork, graph: ProcessGraph) -> None:
        """Release joins that nothing can reach any more, then finish if no branch is left."""

        instance = work.instance
        while not instance.status.is_terminal:
            released = None
            for join_id in list(instance.join_arrivals):
                blockers = list(instance.current_node_ids) + [
                    other for other in instance.join_arrivals if other != join_id
                ]
                if not any(graph.can_reach(b, join_id) for b in blockers):
                    released = join_id
                    break
            if released is None:
                break
            rejected = released in instance.rejected_joins
            self._unpark(work, released)
            logger.debug(
                "Join released",
                extra={"instance_id": instance.id, "node_id": released, "rejected": rejected},
            )
            self._enter(work, graph, graph.node(released), rejected=rejected)

        if instance.status.is_terminal:
            return
        if not instance.current_node_ids and not instance.join_arrivals:
            if instance.ended_via_reject:
                self._finish(
                    work,
                    InstanceStatus.REJECTED,
                    remark="Ended along a rejection path",
                    action=HistoryAction.COMPLETE,
                )
            else:
                self._finish(
                    work,
                    InstanceStatus.COMPLETED,
                    remark="Approved",
                    action=HistoryAction.COMPLETE,
                )

    def _finish(
        self,
        work: InstanceWork,
        status: InstanceStatus,
        *,
        remark: str,
        action: HistoryAction,
        operator_id: str | None = None,
        node_id: str | None = None,
    ) -> None:
        cancelled = self._ledger.cancel_pending(work)
        previous = transition(instance=work.instance, to=status, now=work.now, remark=remark)
        work.instance.record(
            action,
            at=work.now,
            node_id=node_id,
            operator_id=operator_id,
            comment=remark,
            from_status=previous.value,
            to_status=status.value,
        )
        work.emit(
            _FINAL_EVENTS[status],
            instanceNo=work.instance.instance_no,
            status=status.value,
            remark=remark,
            operatorId=operator_id,
            businessKey=work.instance.business_key,
        )
        logger.info(
            "Flow instance finished",
            extra={
                "instance_id": work.instance.id,
                "status": status.value,
                "cancelled_tasks": len(cancelled),
            },
        )

    def _leave(self, work: InstanceWork, node_id: str) -> None:
        current = work.instance.current_node_ids
        if node_id in current:
            current.remove(node_id)
        if node_id in work.instance.rejected_nodes:
            work.instance.rejected_nodes.remove(node_id)

    def _unpark(self, work: InstanceWork, join_id: str) -> None:
        work.instance.join_arrivals.pop(join_id, None)
        if join_id in work.instance.rejected_joins:
            work.instance.rejected_joins.remove(join_id)

    def _announce_tasks(self, work: InstanceWork, tasks: Sequence[Task]) -> None:
        for task in tasks:
            work.emit(
                EventType.TASK_CREATED,
                taskId=task.id,
                taskNo=task.task_no,
                nodeId=task.node_id,
                nodeName=task.node_name,
                assigneeId=task.assignee_id,
                dueTime=task.due_time.isoformat() if task.due_time else None,
                sourceTaskId=task.source_task_id,
            )
