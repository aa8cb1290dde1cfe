# automation/nodes/runner.py
from __future__ import annotations

import logging
from typing import Optional

from automation.events import EventBus, get_event_bus
from automation.nodes.factory import create_step
from automation.nodes.models import GraphNode, NodeRunResult, RunState, WorkflowGraph

logger = logging.getLogger(__name__)


def execute_node(
    node_type: str,
    node: GraphNode,
    run: RunState,
    graph: WorkflowGraph,
    event_bus: Optional[EventBus] = None,
) -> NodeRunResult:
    """
    Execute a single workflow node for a run.

    This is the main entry point for node execution. It:
    1. Builds the step for the node type (parsing its configuration)
    2. Checks run-level preconditions
    3. Executes the step
    4. Returns a standardized result

    Args:
        node_type: The node's type string
        node: The graph node to execute
        run: Current run state
        graph: Workflow graph the node belongs to
        event_bus: Sink for intent events (defaults to the process-wide bus)

    Returns:
        NodeRunResult; never raises
    """
    logger.debug("Executing node %s (%s) for run %s", node.id, node_type, run.run_id)
    bus = event_bus or get_event_bus()

    try:
        step = create_step(node, node_type)
        step.validate_input(run)
        return step.execute(run, graph, bus)

    except ValueError as e:
        # Unknown type, invalid configuration or missing contact
        logger.error("Node %s rejected: %s", node.id, e)
        return NodeRunResult(success=False, error=str(e))

    except Exception as e:
        logger.error("Node %s execution failed: %s", node.id, e, exc_info=True)
        return NodeRunResult(success=False, error=str(e))
