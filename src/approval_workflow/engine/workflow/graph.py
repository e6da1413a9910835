"""Immutable process graph built from a published flow definition.

Nodes are a closed set of frozen dataclasses (`Node`). Graphs are validated once
by :func:`load_graph` and then shared read-only by every instance of that
definition version through :class:`GraphCache`.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .conditions import ConditionExpression, ConditionValueError, evaluate_condition
from .definitions import (
    AssignRule,
    ConsensusPolicy,
    DefinitionRecord,
    EdgeKind,
    EdgeSpec,
    EmptyAssigneeAction,
    NodeKind,
    NodeSpec,
)
from .errors import ConditionEvaluationError, InvalidGraphError

logger = logging.getLogger(__name__)


class NodeOutcome(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True, slots=True)
class StartNode:
    id: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class ApprovalNode:
    id: str
    assign_rule: AssignRule
    name: str = ""
    consensus: ConsensusPolicy = ConsensusPolicy.ANY
    empty_assignee_action: EmptyAssigneeAction = EmptyAssigneeAction.SKIP
    time_limit_hours: float | None = None
    cc_rule: AssignRule | None = None


@dataclass(frozen=True, slots=True)
class CcNode:
    id: str
    cc_rule: AssignRule
    name: str = ""


@dataclass(frozen=True, slots=True)
class ConditionBranch:
    condition: ConditionExpression
    target: str


@dataclass(frozen=True, slots=True)
class ConditionNode:
    id: str
    branches: tuple[ConditionBranch, ...]
    default_target: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class EndNode:
    id: str
    name: str = ""


Node = StartNode | ApprovalNode | CcNode | ConditionNode | EndNode


@dataclass(frozen=True, slots=True)
class Edge:
    source: str
    target: str
    kind: EdgeKind = EdgeKind.NORMAL


_FORWARD_KINDS: frozenset[EdgeKind] = frozenset({EdgeKind.NORMAL, EdgeKind.REJECT})


@dataclass(frozen=True, slots=True)
class ProcessGraph:
    definition_id: str
    version: int
    start_node_id: str
    nodes: Mapping[str, Node]
    edges: Mapping[str, tuple[Edge, ...]]
    _descendants: Mapping[str, frozenset[str]] = field(repr=False)
    _in_degree: Mapping[str, int] = field(repr=False)

    def node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise InvalidGraphError(self.definition_id, [f"unknown node {node_id!r}"]) from None

    def node_name(self, node_id: str) -> str:
        node = self.nodes.get(node_id)
        if node is None:
            return node_id
        return node.name or node_id

    def out_edges(self, node_id: str, kind: EdgeKind) -> list[Edge]:
        return [e for e in self.edges.get(node_id, ()) if e.kind == kind]

    def next_nodes(
        self,
        node_id: str,
        form_data: Mapping[str, Any],
        outcome: NodeOutcome = NodeOutcome.APPROVED,
    ) -> list[str]:
        """Targets to visit after `node_id` settles with `outcome`.

        CONDITION nodes always yield exactly one target: the first matching
        branch, else the default branch.
        """

        node = self.node(node_id)
        if isinstance(node, ConditionNode):
            for branch in node.branches:
                try:
                    matched = evaluate_condition(branch.condition, form_data)
                except ConditionValueError as e:
                    raise ConditionEvaluationError(node_id, str(e)) from e
                if matched:
                    return [branch.target]
            return [node.default_target]

        kind = EdgeKind.REJECT if outcome == NodeOutcome.REJECTED else EdgeKind.NORMAL
        return [e.target for e in self.out_edges(node_id, kind)]

    def reject_target(self, node_id: str) -> str | None:
        edges = self.out_edges(node_id, EdgeKind.REJECT_TO)
        return edges[0].target if edges else None

    def can_reach(self, source: str, target: str) -> bool:
        """True if `target` is strictly downstream of `source` along forward edges."""

        return target in self._descendants.get(source, frozenset())

    def forward_in_degree(self, node_id: str) -> int:
        return self._in_degree.get(node_id, 0)

    @property
    def end_node_ids(self) -> list[str]:
        return [n.id for n in self.nodes.values() if isinstance(n, EndNode)]

    def topological_order(self) -> list[str]:
        """Node ids in breadth-first topological order from START."""

        remaining = dict(self._in_degree)
        queue: deque[str] = deque([self.start_node_id])
        order: list[str] = []
        seen: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            for edge in self.edges.get(current, ()):
                if edge.kind not in _FORWARD_KINDS:
                    continue
                remaining[edge.target] = remaining.get(edge.target, 1) - 1
                if remaining[edge.target] <= 0 and edge.target not in seen:
                    queue.append(edge.target)
        order.extend(node_id for node_id in self.nodes if node_id not in seen)
        return order


def _build_node(spec: NodeSpec, out: list[EdgeSpec], problems: list[str]) -> Node | None:
    label = f"node {spec.id!r}"
    if spec.type == NodeKind.START:
        return StartNode(id=spec.id, name=spec.name)
    if spec.type == NodeKind.END:
        return EndNode(id=spec.id, name=spec.name)
    if spec.type == NodeKind.APPROVAL:
        if spec.assign_rule is None:
            problems.append(f"{label}: APPROVAL node requires an assign_rule")
            return None
        return ApprovalNode(
            id=spec.id,
            name=spec.name,
            assign_rule=spec.assign_rule,
            consensus=spec.consensus,
            empty_assignee_action=spec.empty_assignee_action,
            time_limit_hours=spec.time_limit_hours,
            cc_rule=spec.cc_rule,
        )
    if spec.type == NodeKind.CC:
        rule = spec.cc_rule or spec.assign_rule
        if rule is None:
            problems.append(f"{label}: CC node requires a cc_rule")
            return None
        return CcNode(id=spec.id, name=spec.name, cc_rule=rule)
    if spec.type == NodeKind.CONDITION:
        branches: list[ConditionBranch] = []
        defaults: list[str] = []
        for edge in out:
            if edge.kind != EdgeKind.NORMAL:
                problems.append(f"{label}: CONDITION node edges must be NORMAL")
                continue
            if edge.condition is None:
                defaults.append(edge.target)
            else:
                branches.append(ConditionBranch(condition=edge.condition, target=edge.target))
        if len(defaults) != 1:
            problems.append(
                f"{label}: CONDITION node requires exactly one default edge, found {len(defaults)}"
            )
            return None
        return ConditionNode(
            id=spec.id, name=spec.name, branches=tuple(branches), default_target=defaults[0]
        )
    problems.append(f"{label}: unsupported node type {spec.type!r}")
    return None


def _find_cycle(node_ids: list[str], forward: dict[str, list[str]]) -> list[str] | None:
    white, grey, black = 0, 1, 2
    color = {n: white for n in node_ids}
    parent: dict[str, str] = {}

    for root in node_ids:
        if color[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = grey
        while stack:
            current, idx = stack[-1]
            targets = forward.get(current, [])
            if idx < len(targets):
                stack[-1] = (current, idx + 1)
                nxt = targets[idx]
                if color[nxt] == grey:
                    cycle = [nxt, current]
                    walker = current
                    while walker != nxt and walker in parent:
                        walker = parent[walker]
                        cycle.append(walker)
                    return list(reversed(cycle))
                if color[nxt] == white:
                    color[nxt] = grey
                    parent[nxt] = current
                    stack.append((nxt, 0))
            else:
                color[current] = black
                stack.pop()
    return None


def _descendants(node_ids: list[str], forward: dict[str, list[str]]) -> dict[str, frozenset[str]]:
    memo: dict[str, frozenset[str]] = {}

    def visit(node_id: str) -> frozenset[str]:
        cached = memo.get(node_id)
        if cached is not None:
            return cached
        acc: set[str] = set()
        for nxt in forward.get(node_id, []):
            acc.add(nxt)
            acc |= visit(nxt)
        memo[node_id] = frozenset(acc)
        return memo[node_id]

    for node_id in node_ids:
        visit(node_id)
    return memo


def _check_definition(record: DefinitionRecord) -> tuple[ProcessGraph | None, list[str]]:
    problems: list[str] = []

    specs: dict[str, NodeSpec] = {}
    for spec in record.nodes:
        if spec.id in specs:
            problems.append(f"duplicate node id {spec.id!r}")
            continue
        specs[spec.id] = spec

    starts = [s.id for s in specs.values() if s.type == NodeKind.START]
    ends = {s.id for s in specs.values() if s.type == NodeKind.END}
    if len(starts) != 1:
        problems.append(f"expected exactly one START node, found {len(starts)}")
    if not ends:
        problems.append("expected at least one END node, found 0")

    out_specs: dict[str, list[EdgeSpec]] = {node_id: [] for node_id in specs}
    forward: dict[str, list[str]] = {node_id: [] for node_id in specs}
    in_degree: dict[str, int] = {node_id: 0 for node_id in specs}
    edges: dict[str, list[Edge]] = {node_id: [] for node_id in specs}

    for edge in record.edges:
        where = f"edge {edge.source!r} -> {edge.target!r}"
        if edge.source not in specs or edge.target not in specs:
            problems.append(f"{where}: references an unknown node")
            continue
        source_type = specs[edge.source].type
        target_type = specs[edge.target].type
        if edge.condition is not None and source_type != NodeKind.CONDITION:
            problems.append(f"{where}: only edges leaving a CONDITION node may carry a condition")
        if edge.kind == EdgeKind.REJECT_TO:
            if source_type != NodeKind.APPROVAL or target_type != NodeKind.APPROVAL:
                problems.append(f"{where}: REJECT_TO edges must join two APPROVAL nodes")
                continue
        elif edge.kind == EdgeKind.REJECT:
            if source_type != NodeKind.APPROVAL:
                problems.append(f"{where}: REJECT edges must leave an APPROVAL node")
                continue
        if edge.kind in _FORWARD_KINDS:
            if source_type == NodeKind.END:
                problems.append(f"{where}: END nodes cannot have outgoing edges")
            if target_type == NodeKind.START:
                problems.append(f"{where}: START nodes cannot have incoming edges")
            forward[edge.source].append(edge.target)
            in_degree[edge.target] += 1
        out_specs[edge.source].append(edge)
        edges[edge.source].append(Edge(source=edge.source, target=edge.target, kind=edge.kind))

    for node_id, out in edges.items():
        if len([e for e in out if e.kind == EdgeKind.REJECT_TO]) > 1:
            problems.append(f"node {node_id!r}: at most one REJECT_TO edge is allowed")

    nodes: dict[str, Node] = {}
    for spec in specs.values():
        node = _build_node(spec, out_specs[spec.id], problems)
        if node is not None:
            nodes[spec.id] = node

    node_ids = list(specs)
    cycle = _find_cycle(node_ids, forward)
    if cycle is not None:
        problems.append("forward edges form a cycle: " + " -> ".join(cycle))
        return None, problems

    descendants = _descendants(node_ids, forward)

    if len(starts) == 1:
        start = starts[0]
        reachable = descendants[start] | {start}
        unreachable = [n for n in node_ids if n not in reachable]
        if unreachable:
            problems.append("nodes unreachable from START: " + ", ".join(sorted(unreachable)))
        if ends and not (ends & reachable):
            problems.append("no END node is reachable from START")

    for node_id, spec in specs.items():
        if spec.type == NodeKind.END:
            continue
        if not any(e.kind == EdgeKind.NORMAL for e in edges[node_id]):
            problems.append(f"node {node_id!r}: non-END node has no outgoing NORMAL edge")

    for node_id, out in edges.items():
        for edge in out:
            if edge.kind != EdgeKind.REJECT_TO:
                continue
            if node_id not in descendants.get(edge.target, frozenset()):
                problems.append(
                    f"edge {node_id!r} -> {edge.target!r}: REJECT_TO target must be upstream"
                )

    if problems:
        return None, problems

    graph = ProcessGraph(
        definition_id=record.id,
        version=record.version,
        start_node_id=starts[0],
        nodes=MappingProxyType(nodes),
        edges=MappingProxyType({k: tuple(v) for k, v in edges.items()}),
        _descendants=MappingProxyType(descendants),
        _in_degree=MappingProxyType(in_degree),
    )
    return graph, []


def validate_definition(record: DefinitionRecord) -> list[str]:
    """Return the list of problems with `record` (empty when it is a valid graph)."""

    _graph, problems = _check_definition(record)
    return problems


def load_graph(record: DefinitionRecord) -> ProcessGraph:
    """Build and validate the process graph of `record`.

    Raises:
        InvalidGraphError: the definition violates a graph invariant.
    """

    graph, problems = _check_definition(record)
    if graph is None:
        logger.warning(
            "Rejected invalid flow graph",
            extra={"definition_id": record.id, "version": record.version, "problems": problems},
        )
        raise InvalidGraphError(record.id, problems)
    return graph


class GraphCache:
    """Process graphs keyed by (definition_id, version). Built once, never mutated."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._graphs: dict[tuple[str, int], ProcessGraph] = {}

    def get(self, record: DefinitionRecord) -> ProcessGraph:
        key = (record.id, record.version)
        with self._lock:
            graph = self._graphs.get(key)
            if graph is None:
                graph = load_graph(record)
                self._graphs[key] = graph
                logger.info(
                    "Process graph loaded",
                    extra={"definition_id": record.id, "version": record.version},
                )
            return graph

    def clear(self) -> None:
        with self._lock:
            self._graphs.clear()
