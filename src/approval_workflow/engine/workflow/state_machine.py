from __future__ import annotations

from datetime import datetime

from .errors import IllegalTransitionError
from .models import FlowInstance, InstanceStatus

ALLOWED_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
    InstanceStatus.PENDING: {
        InstanceStatus.RUNNING,
        InstanceStatus.COMPLETED,
        InstanceStatus.REJECTED,
        InstanceStatus.TERMINATED,
    },
    InstanceStatus.RUNNING: {
        InstanceStatus.COMPLETED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    },
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.REJECTED: set(),
    InstanceStatus.CANCELLED: set(),
    InstanceStatus.TERMINATED: set(),
}


def can_transition(current: InstanceStatus, to: InstanceStatus) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, set())


def transition(
    *, instance: FlowInstance, to: InstanceStatus, now: datetime, remark: str | None = None
) -> InstanceStatus:
    """Move `instance` to status `to`, enforcing the instance invariants.

    Terminal statuses clear `current_node_ids` and stamp `end_time`. Returns the
    previous status.
    """

    previous = instance.status
    if previous == to:
        return previous
    if not can_transition(previous, to):
        raise IllegalTransitionError(f"Illegal transition: {previous.value} -> {to.value}")

    instance.status = to
    if to.is_terminal:
        instance.current_node_ids = []
        instance.sequential_queues = {}
        instance.join_arrivals = {}
        instance.rejected_joins = []
        instance.rejected_nodes = []
        instance.end_time = now
        if remark is not None:
            instance.result_remark = remark
    return previous
