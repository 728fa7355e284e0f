"""
Workflow graph model.

Immutable value types for a published definition: nodes, edges and the
per-type node configuration. Raw node ``config`` maps are parsed once into
a typed variant (``StartConfig``, ``FormConfig``, ...) when the definition
is loaded, so the engine dispatches on a closed set of shapes and a node
carrying an undeclared field is rejected up front.

Operations:
- ``start(definition)``: the unique start node
- ``outgoing(definition, node_id)``: edges in evaluation order
- ``validate(definition)``: structural violations (empty when publishable)
"""

from dataclasses import dataclass, field, fields
from typing import Any, Optional, Union

from core.constants import NodeType, WaitKind
from core.exceptions import MalformedDefinition
from workflow.expressions import ConditionEvaluator, get_condition_evaluator


# ─── Node configuration variants ───────────────────────────────

@dataclass(frozen=True)
class StartConfig:
    """Start node. Seeds the context from the queue item's input data."""
    description: str = ""


@dataclass(frozen=True)
class FormConfig:
    """Form processing node."""
    form_key: str = ""
    output_key: str = ""
    required_fields: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class NotificationConfig:
    """Notification node. ``required`` turns a failed send into a retryable error."""
    recipient_rule: str = ""
    message: str = ""
    title: str = ""
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class ConditionConfig:
    """Branch node. Guards live on the outgoing edges."""
    description: str = ""


@dataclass(frozen=True)
class WaitConfig:
    """Approval or signature node."""
    deadline_days: Optional[float] = None
    assignment_type: str = "all"
    assignees: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    signers: tuple[str, ...] = ()
    document_key: str = ""
    message: str = ""
    description: str = ""


@dataclass(frozen=True)
class EndConfig:
    """Terminal node."""
    outcome: str = ""
    description: str = ""


NodeConfig = Union[StartConfig, FormConfig, NotificationConfig, ConditionConfig, WaitConfig, EndConfig]

CONFIG_TYPES: dict[NodeType, type] = {
    NodeType.START: StartConfig,
    NodeType.FORM: FormConfig,
    NodeType.NOTIFICATION: NotificationConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.APPROVAL: WaitConfig,
    NodeType.SIGNATURE: WaitConfig,
    NodeType.END: EndConfig,
}

WAIT_NODE_TYPES = frozenset({NodeType.APPROVAL, NodeType.SIGNATURE})


def parse_node_config(node_id: str, node_type: NodeType, raw: Optional[dict]) -> NodeConfig:
    """Parse a raw config map into the typed variant for ``node_type``.

    Raises:
        MalformedDefinition: unknown field or wrong value shape
    """
    config_cls = CONFIG_TYPES[node_type]
    raw = raw or {}
    if not isinstance(raw, dict):
        raise MalformedDefinition(f"Node '{node_id}': config must be an object")

    declared = {f.name: f for f in fields(config_cls)}
    unknown = sorted(set(raw) - set(declared))
    if unknown:
        raise MalformedDefinition(
            f"Node '{node_id}' ({node_type.value}): undeclared config field(s) {', '.join(unknown)}"
        )

    values: dict[str, Any] = {}
    for name, value in raw.items():
        default = declared[name].default
        if isinstance(default, tuple):
            if isinstance(value, str):
                value = (value,)
            elif isinstance(value, (list, tuple)):
                value = tuple(str(v) for v in value)
            else:
                raise MalformedDefinition(f"Node '{node_id}': '{name}' must be a list")
        elif isinstance(default, bool):
            if not isinstance(value, bool):
                raise MalformedDefinition(f"Node '{node_id}': '{name}' must be a boolean")
        elif isinstance(default, str):
            if not isinstance(value, str):
                raise MalformedDefinition(f"Node '{node_id}': '{name}' must be a string")
        elif name == "deadline_days" and value is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise MalformedDefinition(f"Node '{node_id}': 'deadline_days' must be a positive number")
        values[name] = value

    return config_cls(**values)


# ─── Graph value types ─────────────────────────────────────────

@dataclass(frozen=True)
class WorkflowNode:
    id: str
    type: NodeType
    config: NodeConfig

    @property
    def is_wait(self) -> bool:
        return self.type in WAIT_NODE_TYPES

    @property
    def wait_kind(self) -> Optional[WaitKind]:
        if self.type == NodeType.APPROVAL:
            return WaitKind.APPROVAL
        if self.type == NodeType.SIGNATURE:
            return WaitKind.SIGNATURE
        return None

    def to_dict(self) -> dict:
        config = {}
        for f in fields(self.config):
            value = getattr(self.config, f.name)
            if value != f.default:
                config[f.name] = list(value) if isinstance(value, tuple) else value
        return {"id": self.id, "type": self.type.value, "config": config}


@dataclass(frozen=True)
class WorkflowEdge:
    id: str
    source: str
    target: str
    guard: Optional[str] = None
    priority: Optional[int] = None
    index: int = 0

    @property
    def is_default(self) -> bool:
        return not self.guard

    def to_dict(self) -> dict:
        data = {"id": self.id, "source": self.source, "target": self.target}
        if self.guard:
            data["guard"] = self.guard
        if self.priority is not None:
            data["priority"] = self.priority
        return data


@dataclass(frozen=True)
class WorkflowDefinition:
    """An immutable workflow graph pinned by ``(id, version)``."""

    id: str
    version: int
    nodes: tuple[WorkflowNode, ...]
    edges: tuple[WorkflowEdge, ...]
    name: str = ""
    _index: dict = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        index: dict[str, WorkflowNode] = {}
        for node in self.nodes:
            index.setdefault(node.id, node)
        object.__setattr__(self, "_index", index)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def node(self, node_id: str) -> WorkflowNode:
        """Look up a node by id.

        Raises:
            MalformedDefinition: the id is not declared
        """
        try:
            return self._index[node_id]
        except KeyError:
            raise MalformedDefinition(
                f"Definition {self.id} v{self.version} has no node '{node_id}'"
            ) from None

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowDefinition":
        """Parse a serialized definition.

        Every node config is parsed into its typed variant; all parse
        problems are collected and raised together.

        Raises:
            MalformedDefinition: with ``violations`` listing each problem
        """
        if not isinstance(data, dict):
            raise MalformedDefinition("Definition must be an object")

        problems: list[str] = []
        nodes: list[WorkflowNode] = []
        for position, raw in enumerate(data.get("nodes") or []):
            if not isinstance(raw, dict) or not raw.get("id"):
                problems.append(f"Node #{position} has no id")
                continue
            node_id = str(raw["id"])
            try:
                node_type = NodeType(raw.get("type"))
            except ValueError:
                problems.append(f"Node '{node_id}' has unknown type '{raw.get('type')}'")
                continue
            try:
                config = parse_node_config(node_id, node_type, raw.get("config"))
            except MalformedDefinition as exc:
                problems.append(exc.message)
                continue
            nodes.append(WorkflowNode(id=node_id, type=node_type, config=config))

        edges: list[WorkflowEdge] = []
        for position, raw in enumerate(data.get("edges") or []):
            if not isinstance(raw, dict) or not raw.get("source") or not raw.get("target"):
                problems.append(f"Edge #{position} needs a source and a target")
                continue
            priority = raw.get("priority")
            if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
                problems.append(f"Edge #{position}: priority must be an integer")
                continue
            guard = raw.get("guard")
            if guard is not None and not isinstance(guard, str):
                problems.append(f"Edge #{position}: guard must be a string")
                continue
            edges.append(WorkflowEdge(
                id=str(raw.get("id") or f"e{position}"),
                source=str(raw["source"]),
                target=str(raw["target"]),
                guard=guard.strip() if guard and guard.strip() else None,
                priority=priority,
                index=position,
            ))

        if problems:
            raise MalformedDefinition(
                f"Definition {data.get('id')} could not be parsed", violations=problems
            )

        return cls(
            id=str(data.get("id") or ""),
            version=int(data.get("version") or 1),
            name=str(data.get("name") or ""),
            nodes=tuple(nodes),
            edges=tuple(edges),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


# ─── Operations ────────────────────────────────────────────────

def start(definition: WorkflowDefinition) -> WorkflowNode:
    """Return the unique start node.

    Raises:
        MalformedDefinition: no start node, or more than one
    """
    starts = [n for n in definition.nodes if n.type == NodeType.START]
    if len(starts) != 1:
        raise MalformedDefinition(
            f"Definition {definition.id} v{definition.version} has {len(starts)} start nodes"
        )
    return starts[0]


def _edge_order(edge: WorkflowEdge) -> tuple:
    return (edge.priority is None, edge.priority or 0, edge.index)


def outgoing(definition: WorkflowDefinition, node_id: str) -> list[WorkflowEdge]:
    """Edges leaving ``node_id``: lowest priority first, unprioritized last, then declaration order."""
    return sorted((e for e in definition.edges if e.source == node_id), key=_edge_order)


def validate(
    definition: WorkflowDefinition,
    evaluator: Optional[ConditionEvaluator] = None,
) -> list[str]:
    """Structural check run once at publish time.

    Returns:
        List of violations; empty when the definition may be activated.
    """
    evaluator = evaluator or get_condition_evaluator()
    violations: list[str] = []

    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            violations.append(f"Duplicate node id '{node.id}'")
        seen.add(node.id)

    seen_edges: set[str] = set()
    for edge in definition.edges:
        if edge.id in seen_edges:
            violations.append(f"Duplicate edge id '{edge.id}'")
        seen_edges.add(edge.id)

    starts = [n for n in definition.nodes if n.type == NodeType.START]
    if not starts:
        violations.append("Definition has no start node")
    elif len(starts) > 1:
        violations.append(
            f"Definition has {len(starts)} start nodes: {', '.join(n.id for n in starts)}"
        )

    for edge in definition.edges:
        if not definition.has_node(edge.source):
            violations.append(f"Edge '{edge.id}' leaves unknown node '{edge.source}'")
        if not definition.has_node(edge.target):
            violations.append(f"Edge '{edge.id}' points to unknown node '{edge.target}'")
        if edge.guard:
            for problem in evaluator.validate(edge.guard):
                violations.append(f"Edge '{edge.id}' has an invalid guard: {problem}")

    for node in definition.nodes:
        defaults = [e for e in definition.edges if e.source == node.id and e.is_default]
        if len(defaults) > 1:
            violations.append(
                f"Node '{node.id}' has {len(defaults)} unguarded edges; at most one default is allowed"
            )

    if len(starts) == 1:
        reachable = _reachable(definition, starts[0].id)
        for node in definition.nodes:
            if node.id not in reachable:
                violations.append(f"Node '{node.id}' is not reachable from start")

    cycle = _find_cycle(definition)
    if cycle:
        violations.append(f"Definition contains a cycle: {' -> '.join(cycle)}")

    return violations


def _reachable(definition: WorkflowDefinition, start_id: str) -> set[str]:
    reachable = {start_id}
    frontier = [start_id]
    while frontier:
        current = frontier.pop()
        for edge in definition.edges:
            if edge.source == current and edge.target not in reachable and definition.has_node(edge.target):
                reachable.add(edge.target)
                frontier.append(edge.target)
    return reachable


def _find_cycle(definition: WorkflowDefinition) -> Optional[list[str]]:
    """Iterative DFS; returns the node ids of the first cycle found."""
    adjacency: dict[str, list[str]] = {}
    for edge in definition.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)

    white, grey, black = 0, 1, 2
    color = {node.id: white for node in definition.nodes}

    for root in color:
        if color[root] != white:
            continue
        stack = [(root, iter(adjacency.get(root, [])))]
        path = [root]
        color[root] = grey
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node_id] = black
                stack.pop()
                path.pop()
                continue
            state = color.get(child)
            if state == grey:
                return path[path.index(child):] + [child]
            if state == white:
                color[child] = grey
                stack.append((child, iter(adjacency.get(child, []))))
                path.append(child)
    return None
