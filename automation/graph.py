"""
Structural and per-node-type checks for workflow graphs.

Errors make a graph unpublishable; warnings are advisory. The validator works
on the raw JSON shape (``{"nodes": [...], "edges": [...]}``) so it can report
malformed input that would not survive model parsing.
"""

from __future__ import annotations

import logging
from numbers import Real
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from pydantic import BaseModel, Field, ValidationError

from automation.nodes.models import DelayUnit, NodeType, WorkflowGraph

logger = logging.getLogger(__name__)

_NODE_TYPES = {t.value for t in NodeType}
_DELAY_UNITS = {u.value for u in DelayUnit}


class ValidationIssue(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = Field(None, serialization_alias="nodeId")
    field: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool = Field(..., serialization_alias="isValid")
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]


def _as_id(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class _Collector:
    def __init__(self) -> None:
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def error(self, code: str, message: str, node_id: Optional[str] = None, field: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(code=code, message=message, node_id=_as_id(node_id), field=field))

    def warn(self, code: str, message: str, node_id: Optional[str] = None) -> None:
        self.warnings.append(ValidationIssue(code=code, message=message, node_id=_as_id(node_id)))


def validate_graph(graph: Union[WorkflowGraph, Mapping[str, Any], None]) -> ValidationResult:
    """Validate a workflow graph and return every error and warning found."""
    if isinstance(graph, WorkflowGraph):
        raw: Mapping[str, Any] = graph.model_dump(by_alias=True)
    else:
        raw = graph or {}

    issues = _Collector()
    nodes = raw.get("nodes")
    edges = raw.get("edges")

    if _check_structure(nodes, edges, issues):
        # Non-dict entries cannot be inspected further
        nodes = [n for n in nodes if isinstance(n, Mapping)]
        edges = [e for e in edges if isinstance(e, Mapping)]

        _check_nodes(nodes, issues)
        _check_edges(nodes, edges, issues)
        _check_connectivity(nodes, edges, issues)
        _check_node_configs(nodes, issues)
        _check_model_shape(raw, issues)

    result = ValidationResult(is_valid=not issues.errors, errors=issues.errors, warnings=issues.warnings)
    logger.debug(
        "Graph validated: valid=%s errors=%d warnings=%d",
        result.is_valid,
        len(result.errors),
        len(result.warnings),
    )
    return result


def _check_structure(nodes: Any, edges: Any, issues: _Collector) -> bool:
    if not isinstance(nodes, list):
        issues.error("INVALID_NODES", "Graph must contain a nodes array")
        return False
    if not isinstance(edges, list):
        issues.error("INVALID_EDGES", "Graph must contain an edges array")
        return False

    if not nodes:
        issues.error("EMPTY_GRAPH", "Workflow must contain at least one node")
    if not edges:
        issues.error("EMPTY_EDGES", "Workflow must contain at least one edge")
    return True


def _check_model_shape(raw: Mapping[str, Any], issues: _Collector) -> None:
    """Report anything the runtime graph model would reject, so a valid graph is always executable."""
    try:
        WorkflowGraph.model_validate(dict(raw))
    except ValidationError as e:
        for err in e.errors():
            loc = err["loc"]
            if len(loc) >= 2 and loc[0] in ("nodes", "edges") and isinstance(loc[1], int):
                collection, index = loc[0], loc[1]
                entry = raw[collection][index]
                entry_id = entry.get("id") if isinstance(entry, Mapping) else None
                field = ".".join(str(part) for part in loc[2:]) or None
                if collection == "nodes":
                    issues.error("INVALID_NODE", f"Node {index + 1} is malformed: {err['msg']}", node_id=entry_id, field=field)
                else:
                    issues.error("INVALID_EDGE", f"Edge {index + 1} is malformed: {err['msg']}", field=field)
            else:
                location = ".".join(str(part) for part in loc)
                issues.error("INVALID_GRAPH", f"Graph is malformed at {location}: {err['msg']}", field=location or None)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _check_nodes(nodes: List[Mapping[str, Any]], issues: _Collector) -> None:
    seen: Set[str] = set()
    start_count = 0
    end_count = 0

    for node in nodes:
        node_id = node.get("id")
        node_type = node.get("type")

        if node_id in seen:
            issues.error("DUPLICATE_NODE_ID", f"Duplicate node ID: {node_id}", node_id=node_id)
        seen.add(node_id)

        if node_type not in _NODE_TYPES:
            issues.error("INVALID_NODE_TYPE", f"Invalid node type: {node_type}", node_id=node_id)

        if node_type == NodeType.START.value:
            start_count += 1
        elif node_type == NodeType.END.value:
            end_count += 1

        position = node.get("position")
        if not isinstance(position, Mapping) or not _is_number(position.get("x")) or not _is_number(position.get("y")):
            issues.warn("INVALID_POSITION", "Node has invalid or missing position", node_id=node_id)

    if start_count == 0:
        issues.error("NO_START_NODE", "Workflow must have exactly one START node")
    elif start_count > 1:
        issues.error("MULTIPLE_START_NODES", "Workflow must have exactly one START node")

    if end_count == 0:
        issues.warn("NO_END_NODE", "Workflow should have at least one END node for proper termination")


def _check_edges(nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]], issues: _Collector) -> None:
    node_ids = {n.get("id") for n in nodes}
    seen: Set[str] = set()

    for edge in edges:
        edge_id = edge.get("id")
        source = edge.get("source")
        target = edge.get("target")

        if edge_id in seen:
            issues.error("DUPLICATE_EDGE_ID", f"Duplicate edge ID: {edge_id}")
        seen.add(edge_id)

        if source not in node_ids:
            issues.error("INVALID_EDGE_SOURCE", f"Edge references non-existent source node: {source}")
        if target not in node_ids:
            issues.error("INVALID_EDGE_TARGET", f"Edge references non-existent target node: {target}")
        if source == target:
            issues.error("SELF_LOOP", f"Edge creates a self-loop on node: {source}")


def _check_connectivity(nodes: List[Mapping[str, Any]], edges: List[Mapping[str, Any]], issues: _Collector) -> None:
    node_ids = [n.get("id") for n in nodes]
    incoming: Dict[Any, int] = {node_id: 0 for node_id in node_ids}
    outgoing: Dict[Any, int] = {node_id: 0 for node_id in node_ids}

    for edge in edges:
        if edge.get("target") in incoming:
            incoming[edge.get("target")] += 1
        if edge.get("source") in outgoing:
            outgoing[edge.get("source")] += 1

    for node in nodes:
        node_id = node.get("id")
        node_type = node.get("type")

        if node_type == NodeType.START.value and incoming[node_id] > 0:
            issues.error("START_HAS_INCOMING", "START node should not have incoming edges", node_id=node_id)

        if node_type == NodeType.END.value and outgoing[node_id] > 0:
            issues.error("END_HAS_OUTGOING", "END node should not have outgoing edges", node_id=node_id)

        if node_type != NodeType.START.value and incoming[node_id] == 0:
            issues.warn("ORPHAN_NODE", "Node has no incoming edges and is unreachable", node_id=node_id)

        if node_type not in (NodeType.END.value, NodeType.CONDITION.value) and outgoing[node_id] == 0:
            issues.warn("DEAD_END_NODE", "Node has no outgoing edges", node_id=node_id)

    if has_cycle(node_ids, edges):
        issues.warn("POTENTIAL_CYCLE", "Workflow may contain cycles. Ensure proper exit conditions.")


def has_cycle(node_ids: List[Any], edges: List[Mapping[str, Any]]) -> bool:
    """Depth-first search for a back edge."""
    adjacency: Dict[Any, List[Any]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        if edge.get("source") in adjacency:
            adjacency[edge.get("source")].append(edge.get("target"))

    visited: Set[Any] = set()
    on_stack: Set[Any] = set()

    for root in node_ids:
        if root in visited:
            continue
        # Iterative DFS; each frame is (node, iterator over its neighbours)
        visited.add(root)
        on_stack.add(root)
        stack = [(root, iter(adjacency.get(root, [])))]
        while stack:
            node, neighbours = stack[-1]
            advanced = False
            for neighbour in neighbours:
                if neighbour in on_stack:
                    return True
                if neighbour not in visited:
                    visited.add(neighbour)
                    on_stack.add(neighbour)
                    stack.append((neighbour, iter(adjacency.get(neighbour, []))))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node)
                stack.pop()
    return False


def _check_node_configs(nodes: List[Mapping[str, Any]], issues: _Collector) -> None:
    node_ids = {n.get("id") for n in nodes}

    for node in nodes:
        node_id = node.get("id")
        data = node.get("data")
        if not isinstance(data, Mapping):
            data = {}

        node_type = node.get("type")
        if node_type == NodeType.SEND_MESSAGE.value:
            _check_send_message(node_id, data, issues)
        elif node_type == NodeType.CONDITION.value:
            _check_condition(node_id, data, node_ids, issues)
        elif node_type == NodeType.DELAY.value:
            _check_delay(node_id, data, issues)
        elif node_type == NodeType.UPDATE_ATTRIBUTE.value:
            _check_update_attribute(node_id, data, issues)


def _check_send_message(node_id: str, data: Mapping[str, Any], issues: _Collector) -> None:
    if not data.get("channel"):
        issues.error("MISSING_CHANNEL", "SendMessage node must specify a channel", node_id=node_id, field="channel")
    if not data.get("templateId"):
        issues.error(
            "MISSING_TEMPLATE", "SendMessage node must specify a template", node_id=node_id, field="templateId"
        )


def _check_condition(node_id: str, data: Mapping[str, Any], node_ids: Set[Any], issues: _Collector) -> None:
    conditions = data.get("conditions")
    if not isinstance(conditions, list) or not conditions:
        issues.error(
            "MISSING_CONDITIONS",
            "Condition node must have at least one condition",
            node_id=node_id,
            field="conditions",
        )
        return

    for i, condition in enumerate(conditions):
        if not isinstance(condition, Mapping):
            condition = {}
        n = i + 1

        if not condition.get("field"):
            issues.error(
                "MISSING_CONDITION_FIELD",
                f"Condition {n} must specify a field",
                node_id=node_id,
                field=f"conditions[{i}].field",
            )
        if not condition.get("operator"):
            issues.error(
                "MISSING_CONDITION_OPERATOR",
                f"Condition {n} must specify an operator",
                node_id=node_id,
                field=f"conditions[{i}].operator",
            )

        next_node_id = condition.get("nextNodeId")
        if not next_node_id:
            issues.error(
                "MISSING_CONDITION_NEXT_NODE",
                f"Condition {n} must specify a next node",
                node_id=node_id,
                field=f"conditions[{i}].nextNodeId",
            )
        elif next_node_id not in node_ids:
            issues.error(
                "INVALID_CONDITION_NEXT_NODE",
                f"Condition {n} references non-existent node: {next_node_id}",
                node_id=node_id,
                field=f"conditions[{i}].nextNodeId",
            )


def _check_delay(node_id: str, data: Mapping[str, Any], issues: _Collector) -> None:
    duration = data.get("duration")
    if not _is_number(duration) or duration <= 0:
        issues.error(
            "INVALID_DELAY_DURATION", "Delay node must have a positive duration", node_id=node_id, field="duration"
        )
    if data.get("unit") not in _DELAY_UNITS:
        issues.error(
            "INVALID_DELAY_UNIT",
            "Delay node must specify a valid unit (minutes, hours, days)",
            node_id=node_id,
            field="unit",
        )


def _check_update_attribute(node_id: str, data: Mapping[str, Any], issues: _Collector) -> None:
    name = data.get("attributeName")
    if not isinstance(name, str) or not name:
        issues.error(
            "MISSING_ATTRIBUTE_NAME",
            "UpdateAttribute node must specify an attribute name",
            node_id=node_id,
            field="attributeName",
        )
    # null is a legitimate value; only an absent key is an error
    if "attributeValue" not in data:
        issues.error(
            "MISSING_ATTRIBUTE_VALUE",
            "UpdateAttribute node must specify an attribute value",
            node_id=node_id,
            field="attributeValue",
        )
