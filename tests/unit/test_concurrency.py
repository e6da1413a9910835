"""Concurrent task decisions on one instance must serialize cleanly."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from approval_workflow.engine.workflow.errors import TaskAlreadyCompletedError
from approval_workflow.engine.workflow.events import EventType
from approval_workflow.engine.workflow.executor import TaskCompletion
from approval_workflow.engine.workflow.locks import InstanceLocks
from approval_workflow.engine.workflow.models import InstanceStatus, TaskStatus

if TYPE_CHECKING:
    from conftest import Engine

Publish = Callable[..., str]

USERS = ["bob", "carol", "dave", "erin", "frank", "mgr", "lead", "admin"]


def _single_node(publish: Publish, consensus: str) -> str:
    return publish(
        [
            {"id": "start", "type": "START"},
            {
                "id": "review",
                "type": "APPROVAL",
                "assign_rule": {"type": "SPECIFIC_USER", "user_ids": USERS},
                "consensus": consensus,
            },
            {"id": "end", "type": "END"},
        ],
        [
            {"source": "start", "target": "review"},
            {"source": "review", "target": "end"},
        ],
    )


def _approve_all_at_once(engine: Engine, task_ids: list[str]) -> tuple[list, list]:
    barrier = threading.Barrier(len(task_ids))
    results: list[TaskCompletion] = []
    declined: list[TaskAlreadyCompletedError] = []
    guard = threading.Lock()

    def worker(task_id: str) -> None:
        barrier.wait()
        try:
            completion = engine.executor.approve(task_id)
        except TaskAlreadyCompletedError as e:
            with guard:
                declined.append(e)
        else:
            with guard:
                results.append(completion)

    threads = [threading.Thread(target=worker, args=(t,)) for t in task_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results, declined


def test_concurrent_all_approvals_complete_exactly_once(
    engine: Engine, publish: Publish
) -> None:
    instance = engine.executor.start_flow(_single_node(publish, "ALL"), initiator_id="alice")
    task_ids = [t.id for t in engine.pending(instance.id)]

    results, declined = _approve_all_at_once(engine, task_ids)

    assert declined == []
    assert sum(1 for r in results if r.node_satisfied) == 1
    assert engine.store.load(instance.id).status == InstanceStatus.COMPLETED
    assert engine.store.load(instance.id).revision == len(task_ids) + 1
    assert engine.sink.types().count(EventType.FLOW_COMPLETED) == 1


def test_concurrent_any_approvals_have_a_single_winner(engine: Engine, publish: Publish) -> None:
    instance = engine.executor.start_flow(_single_node(publish, "ANY"), initiator_id="alice")
    task_ids = [t.id for t in engine.pending(instance.id)]

    results, declined = _approve_all_at_once(engine, task_ids)

    assert len(results) == 1
    assert len(declined) == len(task_ids) - 1
    statuses = [t.status for t in engine.store.list_tasks(instance.id)]
    assert statuses.count(TaskStatus.COMPLETED) == 1
    assert statuses.count(TaskStatus.CANCELLED) == len(task_ids) - 1
    assert engine.sink.types().count(EventType.TASK_APPROVED) == 1


def test_locks_are_released_after_use() -> None:
    locks = InstanceLocks()

    with locks.hold("a"):
        assert len(locks) == 1
        with locks.hold("b"):
            assert len(locks) == 2

    assert len(locks) == 0


def test_lock_serializes_holders_of_the_same_instance() -> None:
    locks = InstanceLocks()
    inside = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal inside, peak
        with locks.hold("same"):
            with guard:
                inside += 1
                peak = max(peak, inside)
            threading.Event().wait(0.01)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert peak == 1
    assert len(locks) == 0
