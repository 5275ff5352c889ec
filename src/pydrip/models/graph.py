"""Flow graph model: nodes, labeled edges and traversal.

A flow is a directed graph of send stages, condition nodes and end
markers. The engine reads it in two independent passes:

1. `linearize()` walks unconditional edges from the start node once, at
   execution creation, so placeholder stage rows can be materialized for
   the straight-line prefix of the flow.
2. `next_node()` resolves the real successor at runtime, one node at a
   time, including labeled branches out of condition nodes.

The linearization never feeds runtime resolution. Once a condition
branches, only `next_node()` decides what happens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Final

from pydrip.models.retry import RetryableError
from pydrip.models.status import Channel, NodeKind

BRANCH_YES: Final = "yes"
BRANCH_NO: Final = "no"


class _EndOfFlow:
    """Marker returned by `next_node()` when the current node ends the flow."""

    _instance: _EndOfFlow | None = None

    def __new__(cls) -> _EndOfFlow:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_FLOW"

    def __bool__(self) -> bool:
        return False


END_OF_FLOW: Final = _EndOfFlow()


class FlowGraphError(RetryableError):
    """Flow design error discovered while traversing a graph.

    Missing edges, unknown node ids, unsupported metrics or operators.
    These fail the execution with a reason and are never retried.
    """

    def is_retryable(self) -> bool:
        return False


@dataclass(frozen=True)
class StageNode:
    """A send stage or an end marker."""

    id: str
    kind: NodeKind = NodeKind.SEND
    """Either NodeKind.SEND or NodeKind.END."""

    channel: Channel | None = None
    """Delivery channel; required for send stages."""

    wait_offset: timedelta = timedelta(0)
    """Delay between the predecessor finishing and this stage becoming due."""

    template_ref: str | None = None
    """Opaque reference handed to the template renderer."""

    label: str | None = None


@dataclass(frozen=True)
class ConditionNode:
    """A per-contact branch point on an engagement metric."""

    id: str
    metric_param: str
    operator: str
    threshold: str
    eval_delay: timedelta = timedelta(0)
    """Delay between the preceding send completing and evaluation."""

    label: str | None = None

    @property
    def kind(self) -> NodeKind:
        return NodeKind.CONDITION


@dataclass(frozen=True)
class Branch:
    """A directed edge. `branch_label` is yes/no out of conditions, None otherwise."""

    source_id: str
    target_id: str
    branch_label: str | None = None


@dataclass(frozen=True)
class PlannedStage:
    """One placeholder produced by linearization."""

    node_id: str
    due_at: datetime


Node = StageNode | ConditionNode


@dataclass(frozen=True)
class FlowDefinition:
    """Read-only graph for one flow.

    Invariants (not validated at design time):
    - a non-end node has at most one unconditional outgoing edge
    - a condition node has one "yes" and one "no" outgoing edge
    """

    id: str
    name: str = ""
    stages: tuple[StageNode, ...] = ()
    conditions: tuple[ConditionNode, ...] = ()
    branches: tuple[Branch, ...] = ()
    initial_node: str | None = None
    _index: dict[str, Node] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for node in (*self.stages, *self.conditions):
            self._index.setdefault(node.id, node)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def node(self, node_id: str) -> Node:
        """Return the node with `node_id`.

        Raises:
            FlowGraphError: If the flow has no such node
        """
        try:
            return self._index[node_id]
        except KeyError:
            raise FlowGraphError(f"Flow {self.id} has no node {node_id!r}") from None

    def node_kind(self, node_id: str) -> NodeKind:
        return self.node(node_id).kind

    def offset_of(self, node_id: str) -> timedelta:
        """Delay before `node_id` becomes due once its predecessor is done."""
        node = self.node(node_id)
        if isinstance(node, ConditionNode):
            return node.eval_delay
        return node.wait_offset

    def predecessors(self, node_id: str) -> list[str]:
        return [b.source_id for b in self.branches if b.target_id == node_id]

    def send_stages(self) -> list[StageNode]:
        return [s for s in self.stages if s.kind is NodeKind.SEND]

    def start_node(self) -> str:
        """Return the node an execution starts from.

        `initial_node` when declared, otherwise the first declared node
        that no edge points at.
        """
        if self.initial_node is not None:
            self.node(self.initial_node)
            return self.initial_node

        targets = {b.target_id for b in self.branches}
        for node in (*self.stages, *self.conditions):
            if node.id not in targets:
                return node.id

        if self.stages:
            return self.stages[0].id
        raise FlowGraphError(f"Flow {self.id} has no nodes")

    # ------------------------------------------------------------------
    # Runtime resolution
    # ------------------------------------------------------------------

    def next_node(self, current_id: str, branch_label: str | None = None) -> str | _EndOfFlow:
        """Resolve the successor of `current_id`.

        Scans branches in declaration order; the first edge with a
        matching source (and label, when the source is a condition) wins.

        Args:
            current_id: Node that just finished
            branch_label: "yes" or "no" when leaving a condition node

        Returns:
            Target node id, or END_OF_FLOW when `current_id` is an end node

        Raises:
            FlowGraphError: If no matching edge exists
        """
        current = self.node(current_id)
        if current.kind is NodeKind.END:
            return END_OF_FLOW

        is_condition = current.kind is NodeKind.CONDITION
        if is_condition and branch_label not in (BRANCH_YES, BRANCH_NO):
            raise FlowGraphError(
                f"Condition {current_id!r} needs a branch label, got {branch_label!r}"
            )

        for branch in self.branches:
            if branch.source_id != current_id:
                continue
            if is_condition and branch.branch_label != branch_label:
                continue
            return branch.target_id

        suffix = f" labeled {branch_label!r}" if is_condition else ""
        raise FlowGraphError(f"No outgoing edge from {current_id!r}{suffix} in flow {self.id}")

    # ------------------------------------------------------------------
    # Placeholder materialization
    # ------------------------------------------------------------------

    def linearize(self, start_at: datetime) -> list[PlannedStage]:
        """Best-effort straight-line plan from the start node.

        Follows the first unconditional edge out of each node, skipping
        nodes already visited, and stops after a condition node, an end
        node, or a node without an unconditional edge. Due times
        accumulate each node's offset.
        """
        plan: list[PlannedStage] = []
        visited: set[str] = set()
        current: str | None = self.start_node()
        due_at = start_at

        while current is not None and current not in visited and self.has_node(current):
            visited.add(current)
            node = self.node(current)
            due_at = due_at + self.offset_of(current)
            plan.append(PlannedStage(node_id=current, due_at=due_at))

            if node.kind is not NodeKind.SEND:
                break
            current = next(
                (
                    b.target_id
                    for b in self.branches
                    if b.source_id == current and b.branch_label is None
                ),
                None,
            )

        return plan

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowDefinition:
        """Build a definition from its JSON form.

        Accepts `branches: [{source_id, target_id, branch_label}]` or the
        editor form `connections: [{source, target, sourceHandle}]`, where
        a handle ending in "-yes"/"-no" labels the edge.
        """
        stages = tuple(_parse_stage(s) for s in data.get("stages", []))
        conditions = tuple(_parse_condition(c) for c in data.get("conditions", []))

        branches: list[Branch] = []
        for raw in data.get("branches", []):
            branches.append(
                Branch(
                    source_id=str(raw["source_id"]),
                    target_id=str(raw["target_id"]),
                    branch_label=raw.get("branch_label") or None,
                )
            )
        for raw in data.get("connections", []):
            handle = raw.get("sourceHandle") or ""
            label = None
            if handle.endswith("-yes") or handle == BRANCH_YES:
                label = BRANCH_YES
            elif handle.endswith("-no") or handle == BRANCH_NO:
                label = BRANCH_NO
            branches.append(
                Branch(source_id=str(raw["source"]), target_id=str(raw["target"]), branch_label=label)
            )

        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            stages=stages,
            conditions=conditions,
            branches=tuple(branches),
            initial_node=data.get("initial_node"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "initial_node": self.initial_node,
            "stages": [
                {
                    "id": s.id,
                    "type": s.kind.value,
                    "channel": s.channel.value if s.channel else None,
                    "wait_offset": s.wait_offset.total_seconds(),
                    "template_ref": s.template_ref,
                    "label": s.label,
                }
                for s in self.stages
            ],
            "conditions": [
                {
                    "id": c.id,
                    "metric_param": c.metric_param,
                    "operator": c.operator,
                    "threshold": c.threshold,
                    "eval_delay": c.eval_delay.total_seconds(),
                    "label": c.label,
                }
                for c in self.conditions
            ],
            "branches": [
                {"source_id": b.source_id, "target_id": b.target_id, "branch_label": b.branch_label}
                for b in self.branches
            ],
        }


def _duration(raw: dict[str, Any], key: str) -> timedelta:
    """Read `key` (seconds) or its `_hours`/`_days` variants."""
    if raw.get(f"{key}_days") is not None:
        return timedelta(days=float(raw[f"{key}_days"]))
    if raw.get(f"{key}_hours") is not None:
        return timedelta(hours=float(raw[f"{key}_hours"]))
    return timedelta(seconds=float(raw.get(key) or 0))


def _parse_stage(raw: dict[str, Any]) -> StageNode:
    kind = NodeKind(raw.get("type", "send"))
    if kind is NodeKind.CONDITION:
        raise FlowGraphError(f"Stage {raw.get('id')!r} cannot have type 'condition'")
    channel = raw.get("channel")
    return StageNode(
        id=str(raw["id"]),
        kind=kind,
        channel=Channel(channel) if channel else None,
        wait_offset=_duration(raw, "wait_offset"),
        template_ref=raw.get("template_ref"),
        label=raw.get("label"),
    )


def _parse_condition(raw: dict[str, Any]) -> ConditionNode:
    return ConditionNode(
        id=str(raw["id"]),
        metric_param=str(raw["metric_param"]),
        operator=str(raw["operator"]),
        threshold=str(raw["threshold"]),
        eval_delay=_duration(raw, "eval_delay"),
        label=raw.get("label"),
    )
