"""Loading and validation of stored automation flows.

Flows are persisted exactly as the editor produced them. They are parsed
into typed nodes once, at load time, so the executor never inspects raw
config dictionaries.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from app.automations.schemas import (
    ConditionNode,
    FlowEdge,
    FlowNode,
    GraphValidationIssue,
    TriggerNode,
    flow_node_adapter,
)


CONDITION_HANDLES = ("true", "false")


class GraphValidationError(Exception):
    def __init__(self, code: str, message: str, node_id: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.node_id = node_id

    def to_issue(self) -> GraphValidationIssue:
        return GraphValidationIssue(code=self.code, message=self.message, node_id=self.node_id)


@dataclass(frozen=True)
class AutomationGraph:
    nodes: dict[str, FlowNode]
    trigger_id: str
    # node id -> handle ("true"/"false", or None for default) -> edge
    outgoing: dict[str, dict[str | None, FlowEdge]] = field(default_factory=dict)

    def next_edge(self, node_id: str, handle: str | None = None) -> FlowEdge | None:
        return self.outgoing.get(node_id, {}).get(handle)


def _raw_node_type(raw: dict[str, Any]) -> Any:
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    return raw.get("type") or data.get("nodeType")


def parse_node(raw: dict[str, Any]) -> FlowNode:
    node_id = raw.get("id")
    if not isinstance(node_id, str) or not node_id:
        raise GraphValidationError("invalid_node", "node is missing an id")
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    config = data.get("config") if isinstance(data.get("config"), dict) else {}
    try:
        return flow_node_adapter.validate_python(
            {
                "id": node_id,
                "type": _raw_node_type(raw),
                "label": data.get("label") if isinstance(data.get("label"), str) else None,
                "config": config,
            }
        )
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid node")
        raise GraphValidationError(
            "invalid_node_config",
            f"node {node_id} is invalid: {location} {message}".strip(),
            node_id=node_id,
        ) from exc


def _check_acyclic(nodes: dict[str, FlowNode], adjacency: dict[str, list[str]]) -> None:
    visiting, done = 1, 2
    state: dict[str, int] = {}
    for root in nodes:
        if state.get(root) == done:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        state[root] = visiting
        while stack:
            node_id, index = stack[-1]
            children = adjacency.get(node_id, [])
            if index < len(children):
                stack[-1] = (node_id, index + 1)
                child = children[index]
                child_state = state.get(child)
                if child_state == visiting:
                    raise GraphValidationError("cycle_detected", f"cycle through node {child}", node_id=child)
                if child_state is None:
                    state[child] = visiting
                    stack.append((child, 0))
            else:
                state[node_id] = done
                stack.pop()


def load_graph(flow_data: dict[str, Any] | None) -> AutomationGraph:
    flow = flow_data or {}
    raw_nodes = flow.get("nodes") or []
    raw_edges = flow.get("edges") or []
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise GraphValidationError("invalid_flow", "flow must contain node and edge lists")

    nodes: dict[str, FlowNode] = {}
    for raw in raw_nodes:
        if not isinstance(raw, dict):
            raise GraphValidationError("invalid_node", "node must be an object")
        node = parse_node(raw)
        if node.id in nodes:
            raise GraphValidationError("duplicate_node", f"duplicate node id {node.id}", node_id=node.id)
        nodes[node.id] = node

    triggers = [node_id for node_id, node in nodes.items() if isinstance(node, TriggerNode)]
    if len(triggers) != 1:
        raise GraphValidationError("trigger_count", f"flow must have exactly one trigger node, found {len(triggers)}")
    trigger_id = triggers[0]

    outgoing: dict[str, dict[str | None, FlowEdge]] = defaultdict(dict)
    adjacency: dict[str, list[str]] = defaultdict(list)
    for raw in raw_edges:
        try:
            edge = FlowEdge.model_validate(raw)
        except ValidationError as exc:
            raise GraphValidationError("invalid_edge", "edge needs a source and a target") from exc
        if edge.source not in nodes or edge.target not in nodes:
            raise GraphValidationError(
                "dangling_edge",
                f"edge {edge.source} -> {edge.target} references an unknown node",
                node_id=edge.source if edge.source in nodes else None,
            )
        if edge.target == trigger_id:
            raise GraphValidationError("trigger_has_incoming_edge", "trigger node cannot have incoming edges", node_id=trigger_id)

        source = nodes[edge.source]
        handle: str | None = None
        if isinstance(source, ConditionNode):
            if edge.source_handle not in CONDITION_HANDLES:
                raise GraphValidationError(
                    "condition_edge_without_handle",
                    f"condition {source.id} edges must use the 'true' or 'false' handle",
                    node_id=source.id,
                )
            handle = edge.source_handle
        if handle in outgoing[edge.source]:
            raise GraphValidationError(
                "ambiguous_successor",
                f"node {edge.source} has more than one outgoing edge for handle {handle or 'default'}",
                node_id=edge.source,
            )
        outgoing[edge.source][handle] = edge
        adjacency[edge.source].append(edge.target)

    _check_acyclic(nodes, adjacency)
    return AutomationGraph(nodes=nodes, trigger_id=trigger_id, outgoing=dict(outgoing))


def validate_flow(flow_data: dict[str, Any] | None) -> list[GraphValidationIssue]:
    try:
        load_graph(flow_data)
    except GraphValidationError as exc:
        return [exc.to_issue()]
    return []
