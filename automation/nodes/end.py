# automation/nodes/end.py
from __future__ import annotations

from automation.events import EventBus
from automation.nodes.base import WorkflowStep
from automation.nodes.models import EndConfig, NodeRunResult, NodeType, RunState, WorkflowGraph


class EndStep(WorkflowStep[EndConfig]):
    node_type = NodeType.END
    config_model = EndConfig

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        return NodeRunResult(success=True, output={"ended": True})
