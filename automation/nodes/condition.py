# automation/nodes/condition.py
from __future__ import annotations

import logging

from automation.conditions import evaluate_condition
from automation.events import EventBus
from automation.nodes.base import WorkflowStep
from automation.nodes.models import ConditionConfig, NodeRunResult, NodeType, RunState, WorkflowGraph

logger = logging.getLogger(__name__)


class ConditionStep(WorkflowStep[ConditionConfig]):
    """
    Branches on the run context.

    Conditions are tried in order and the first match wins. Without a match the
    configured default is used, then the node's unlabeled outgoing edge (one
    with no ``sourceHandle``). If none of those exist the run simply has no next
    node from here.
    """

    node_type = NodeType.CONDITION
    config_model = ConditionConfig

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        context = run.context or {}

        for index, rule in enumerate(self.config.conditions):
            result = evaluate_condition(rule.field, rule.operator, rule.value, context)
            if result.matched:
                logger.debug("Condition %d matched on node %s -> %s", index, self.node.id, rule.next_node_id)
                return NodeRunResult(
                    success=True,
                    output={
                        "matchedCondition": rule.model_dump(by_alias=True, mode="json"),
                        "matchedIndex": index,
                        "evaluatedValue": result.evaluated_value,
                    },
                    next_node_id=rule.next_node_id,
                )

        next_node_id = self.config.default_next_node_id
        if not next_node_id:
            default_edge = next((e for e in graph.outgoing(self.node.id) if not e.source_handle), None)
            next_node_id = default_edge.target if default_edge else None

        logger.debug("No condition matched on node %s, default -> %s", self.node.id, next_node_id)
        return NodeRunResult(
            success=True,
            output={"matchedCondition": None, "usedDefault": True},
            next_node_id=next_node_id,
        )
