"""Persisted workflow records: instances, tasks, copy records and history.

These are pydantic models so that stores can round-trip them through JSON with
`model_dump(mode="json")` / `model_validate`.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset(
    {
        InstanceStatus.COMPLETED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
        InstanceStatus.TERMINATED,
    }
)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskResult(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    TRANSFERRED = "TRANSFERRED"
    COUNTERSIGNED = "COUNTERSIGNED"


class HistoryAction(str, Enum):
    START = "START"
    NODE_ACTIVATED = "NODE_ACTIVATED"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    TRANSFER = "TRANSFER"
    COUNTERSIGN = "COUNTERSIGN"
    URGE = "URGE"
    AUTO_SKIP = "AUTO_SKIP"
    TO_ADMIN = "TO_ADMIN"
    CC = "CC"
    ROUTE = "ROUTE"
    REJECT_TO = "REJECT_TO"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"
    TERMINATE = "TERMINATE"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return uuid.uuid4().hex


_NO_ALPHABET = string.ascii_uppercase + string.digits


def _business_no(prefix: str, now: datetime) -> str:
    suffix = "".join(secrets.choice(_NO_ALPHABET) for _ in range(6))
    return f"{prefix}{now.strftime('%Y%m%d')}{suffix}"


def generate_instance_no(now: datetime) -> str:
    return _business_no("WF", now)


def generate_task_no(now: datetime) -> str:
    return _business_no("TK", now)


class HistoryEntry(BaseModel):
    """One append-only audit line on a flow instance."""

    action: HistoryAction
    at: datetime = Field(default_factory=utc_now)
    node_id: str | None = None
    task_id: str | None = None
    operator_id: str | None = None
    comment: str | None = None
    from_status: str | None = None
    to_status: str | None = None


class TaskTransfer(BaseModel):
    from_assignee_id: str
    to_assignee_id: str
    comment: str | None = None
    at: datetime = Field(default_factory=utc_now)


class Task(BaseModel):
    """One assignee's unit of work at an approval node visit."""

    id: str = Field(default_factory=new_id)
    task_no: str
    flow_instance_id: str
    node_id: str
    node_name: str = ""
    visit: int = 1
    assignee_id: str
    status: TaskStatus = TaskStatus.PENDING
    result: TaskResult | None = None
    comment: str | None = None
    form_data_snapshot: dict[str, Any] = Field(default_factory=dict)
    due_time: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    # Set on tasks created by a countersign, pointing at the task that added them.
    source_task_id: str | None = None
    transfers: list[TaskTransfer] = Field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING


class CopyRecord(BaseModel):
    """A CC notification addressed to one recipient."""

    id: str = Field(default_factory=new_id)
    flow_instance_id: str
    node_id: str
    task_id: str | None = None
    recipient_id: str
    is_read: bool = False
    read_time: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class FlowInstance(BaseModel):
    """One execution of a flow definition against a business payload."""

    id: str = Field(default_factory=new_id)
    instance_no: str
    definition_id: str
    definition_version: int
    title: str = ""
    business_key: str | None = None
    status: InstanceStatus = InstanceStatus.PENDING
    current_node_ids: list[str] = Field(default_factory=list)
    form_data: dict[str, Any] = Field(default_factory=dict)
    initiator_id: str
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    result_remark: str | None = None

    # Engine bookkeeping.
    visits: dict[str, int] = Field(default_factory=dict)
    sequential_queues: dict[str, list[str]] = Field(default_factory=dict)
    join_arrivals: dict[str, list[str]] = Field(default_factory=dict)
    # Joins whose arrivals came down a REJECT path.
    rejected_joins: list[str] = Field(default_factory=list)
    # Active approval nodes that were entered along a REJECT path.
    rejected_nodes: list[str] = Field(default_factory=list)
    ended_via_reject: bool = False
    revision: int = 0

    history: list[HistoryEntry] = Field(default_factory=list)

    def visit_of(self, node_id: str) -> int:
        return self.visits.get(node_id, 0)

    def record(self, action: HistoryAction, **fields: Any) -> HistoryEntry:
        entry = HistoryEntry(action=action, **fields)
        self.history.append(entry)
        return entry
