from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Supported workflow node types."""

    START = "start"
    SEND_MESSAGE = "send_message"
    CONDITION = "condition"
    DELAY = "delay"
    UPDATE_ATTRIBUTE = "update_attribute"
    ASSIGN_AGENT = "assign_agent"
    END = "end"


class NodeRunStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


# Milliseconds per delay unit
DELAY_UNIT_MS: Dict[DelayUnit, int] = {
    DelayUnit.MINUTES: 60_000,
    DelayUnit.HOURS: 3_600_000,
    DelayUnit.DAYS: 86_400_000,
}


class AssignmentStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    RANDOM = "random"


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _is_coordinate(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class NodePosition(BaseModel):
    x: float
    y: float


class GraphNode(_CamelModel):
    """A single step in a workflow graph."""

    id: str
    type: str
    position: Optional[NodePosition] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _null_data(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("position", mode="before")
    @classmethod
    def _drop_unusable_position(cls, value: Any) -> Any:
        # Layout only; the graph validator reports it as INVALID_POSITION
        if isinstance(value, dict) and all(_is_coordinate(value.get(axis)) for axis in ("x", "y")):
            return value
        return None


class GraphEdge(_CamelModel):
    """A directed connection between two nodes."""

    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")
    label: Optional[str] = None


class WorkflowGraph(_CamelModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)
    viewport: Optional[Dict[str, float]] = None

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_node(self) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.type == NodeType.START.value:
                return node
        return None

    def outgoing(self, node_id: str) -> List[GraphEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def adjacency(self) -> Dict[str, List[str]]:
        """Map each source node id to its targets, in edge order."""
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)
        return adjacency


# ----------------------------------------------------------------------
# Per-type node configuration
# ----------------------------------------------------------------------
class NodeConfig(_CamelModel):
    """Base class for typed node configuration parsed from ``GraphNode.data``."""


class StartConfig(NodeConfig):
    pass


class EndConfig(NodeConfig):
    pass


class SendMessageConfig(NodeConfig):
    channel: str = Field(..., min_length=1, description="Delivery channel (email, sms, whatsapp, push)")
    template_id: str = Field(..., min_length=1, alias="templateId")
    variables: Optional[Dict[str, Any]] = None


class ConditionRule(_CamelModel):
    field: str = Field(..., min_length=1, description="Dot path into the run context")
    operator: str = Field(..., min_length=1)
    value: Any = None
    next_node_id: str = Field(..., min_length=1, alias="nextNodeId")


class ConditionConfig(NodeConfig):
    conditions: List[ConditionRule] = Field(..., min_length=1)
    default_next_node_id: Optional[str] = Field(None, alias="defaultNextNodeId")


class DelayConfig(NodeConfig):
    duration: float = Field(..., gt=0)
    unit: DelayUnit

    @field_validator("duration", mode="before")
    @classmethod
    def reject_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("duration must be a number")
        return v

    @property
    def duration_ms(self) -> int:
        return int(self.duration * DELAY_UNIT_MS[self.unit])


class UpdateAttributeConfig(NodeConfig):
    attribute_name: str = Field(..., min_length=1, alias="attributeName")
    # Required key, but null is a legitimate value (clears the attribute)
    attribute_value: Any = Field(..., alias="attributeValue")
    operation: Literal["set", "append", "remove", "increment"] = "set"


class AssignAgentConfig(NodeConfig):
    agent_id: Optional[str] = Field(None, alias="agentId")
    team_id: Optional[str] = Field(None, alias="teamId")
    assignment_strategy: Optional[AssignmentStrategy] = Field(None, alias="assignmentStrategy")


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------
class RunState(BaseModel):
    """The slice of a workflow run a step may read."""

    run_id: str
    tenant_id: str
    workflow_id: str
    contact_id: Optional[str] = None
    correlation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class NodeRunResult(_CamelModel):
    """Standard node execution result."""

    success: bool = Field(..., description="Whether the node executed successfully")
    output: Optional[Dict[str, Any]] = Field(None, description="Node-specific output data")
    error: Optional[str] = Field(None, description="Error message if execution failed")
    next_node_id: Optional[str] = Field(None, alias="nextNodeId", description="Explicit transition")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Engine signals such as waitUntil")

    @property
    def wait_until(self) -> Optional[str]:
        if not self.metadata:
            return None
        return self.metadata.get("waitUntil")

    def to_record(self) -> Dict[str, Any]:
        """JSON-ready form stored on the node run audit row."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
