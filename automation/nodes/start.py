# automation/nodes/start.py
from __future__ import annotations

from automation.events import EventBus
from automation.nodes.base import WorkflowStep
from automation.nodes.models import NodeRunResult, NodeType, RunState, StartConfig, WorkflowGraph


class StartStep(WorkflowStep[StartConfig]):
    """Entry point of every workflow; hands off to the first connected node."""

    node_type = NodeType.START
    config_model = StartConfig

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        edges = graph.outgoing(self.node.id)
        return NodeRunResult(
            success=True,
            output={"started": True},
            next_node_id=edges[0].target if edges else None,
        )
