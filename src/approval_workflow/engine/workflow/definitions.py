"""Flow definition documents, as stored by the definition collaborator.

A definition is the editable, JSON-shaped description of a flow. It is turned
into an immutable :class:`~approval_workflow.engine.workflow.graph.ProcessGraph`
by :func:`~approval_workflow.engine.workflow.graph.load_graph`.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .conditions import ConditionExpression


class DefinitionStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    DISABLED = "DISABLED"


class NodeKind(str, Enum):
    START = "START"
    APPROVAL = "APPROVAL"
    CC = "CC"
    CONDITION = "CONDITION"
    END = "END"


class ConsensusPolicy(str, Enum):
    ANY = "ANY"
    ALL = "ALL"
    SEQUENTIAL = "SEQUENTIAL"


class EdgeKind(str, Enum):
    NORMAL = "NORMAL"
    REJECT = "REJECT"
    REJECT_TO = "REJECT_TO"


class AssigneeType(str, Enum):
    SPECIFIC_USER = "SPECIFIC_USER"
    ROLE = "ROLE"
    DEPT_LEADER = "DEPT_LEADER"
    INITIATOR_LEADER = "INITIATOR_LEADER"
    FORM_FIELD = "FORM_FIELD"


class EmptyAssigneeAction(str, Enum):
    SKIP = "SKIP"
    TO_ADMIN = "TO_ADMIN"
    ERROR = "ERROR"


class AssignRule(BaseModel):
    """Who receives the tasks (or copies) of a node."""

    model_config = ConfigDict(frozen=True)

    type: AssigneeType
    user_ids: tuple[str, ...] = ()
    role_ids: tuple[str, ...] = ()
    field_name: str | None = None

    @model_validator(mode="after")
    def _check_rule(self) -> AssignRule:
        if self.type == AssigneeType.FORM_FIELD and not (self.field_name or "").strip():
            raise ValueError("FORM_FIELD rule requires 'field_name'")
        return self


class NodeSpec(BaseModel):
    id: str
    type: NodeKind
    name: str = ""

    # APPROVAL
    assign_rule: AssignRule | None = None
    consensus: ConsensusPolicy = ConsensusPolicy.ANY
    empty_assignee_action: EmptyAssigneeAction = EmptyAssigneeAction.SKIP
    time_limit_hours: float | None = Field(default=None, gt=0)

    # CC, or a CC attached to an APPROVAL node
    cc_rule: AssignRule | None = None


class EdgeSpec(BaseModel):
    source: str
    target: str
    kind: EdgeKind = EdgeKind.NORMAL

    # Only meaningful on edges leaving a CONDITION node; no condition marks the default branch.
    condition: ConditionExpression | None = None


class DefinitionRecord(BaseModel):
    """A versioned flow definition."""

    id: str
    code: str = ""
    name: str = ""
    version: int = Field(default=1, ge=1)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    @property
    def is_published(self) -> bool:
        return self.status == DefinitionStatus.PUBLISHED
