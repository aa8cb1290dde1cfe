# automation/nodes/factory.py
from __future__ import annotations

from typing import Dict, Optional, Type

from pydantic import ValidationError

from automation.nodes.assign_agent import AssignAgentStep
from automation.nodes.base import WorkflowStep
from automation.nodes.condition import ConditionStep
from automation.nodes.delay import DelayStep
from automation.nodes.end import EndStep
from automation.nodes.models import GraphNode, NodeType
from automation.nodes.send_message import SendMessageStep
from automation.nodes.start import StartStep
from automation.nodes.update_attribute import UpdateAttributeStep

STEP_CLASSES: Dict[NodeType, Type[WorkflowStep]] = {
    NodeType.START: StartStep,
    NodeType.SEND_MESSAGE: SendMessageStep,
    NodeType.CONDITION: ConditionStep,
    NodeType.DELAY: DelayStep,
    NodeType.UPDATE_ATTRIBUTE: UpdateAttributeStep,
    NodeType.ASSIGN_AGENT: AssignAgentStep,
    NodeType.END: EndStep,
}


def create_step(node: GraphNode, node_type: Optional[str] = None) -> WorkflowStep:
    """
    Create a step instance for a graph node.

    Args:
        node: The graph node (its ``data`` holds the step configuration)
        node_type: Overrides ``node.type`` when given

    Returns:
        WorkflowStep instance with parsed configuration

    Raises:
        ValueError: If the node type is unknown or its configuration is invalid
    """
    type_str = node_type or node.type
    if not type_str:
        raise ValueError("Workflow node must include a 'type'")

    try:
        step_type = NodeType(type_str)
    except ValueError as e:
        raise ValueError(f"Unknown node type: {type_str}") from e

    step_cls = STEP_CLASSES[step_type]
    try:
        config = step_cls.config_model.model_validate(node.data or {})
    except ValidationError as e:
        raise ValueError(f"Invalid {step_type.value} node configuration: {_summarize(e)}") from e

    return step_cls(node, config)


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "data"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)
