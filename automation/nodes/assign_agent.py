# automation/nodes/assign_agent.py
from __future__ import annotations

import logging

from automation.events import EventBus, WorkflowSubjects, assign_agent_event
from automation.nodes.base import WorkflowStep
from automation.nodes.models import AssignAgentConfig, NodeRunResult, NodeType, RunState, WorkflowGraph

logger = logging.getLogger(__name__)


class AssignAgentStep(WorkflowStep[AssignAgentConfig]):
    """Asks the agent distribution service to assign the contact to an agent."""

    node_type = NodeType.ASSIGN_AGENT
    config_model = AssignAgentConfig

    def validate_input(self, run: RunState) -> None:
        self.require_contact(run, "agent assignment")

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        contact_id = self.require_contact(run, "agent assignment")
        strategy = self.config.assignment_strategy.value if self.config.assignment_strategy else None

        try:
            payload = assign_agent_event(
                tenant_id=run.tenant_id,
                workflow_id=run.workflow_id,
                run_id=run.run_id,
                contact_id=contact_id,
                agent_id=self.config.agent_id,
                team_id=self.config.team_id,
                assignment_strategy=strategy,
                correlation_id=run.correlation_id,
            )
            event_bus.publish(WorkflowSubjects.ASSIGN_AGENT, payload, run.correlation_id)
        except Exception as e:
            logger.error("AssignAgent publish failed for run %s: %s", run.run_id, e)
            return NodeRunResult(success=False, error=f"Failed to assign agent: {e}")

        logger.info(
            "AssignAgent queued for contact %s (agent=%s, team=%s)",
            contact_id,
            self.config.agent_id,
            self.config.team_id,
        )
        return NodeRunResult(
            success=True,
            output={
                "contactId": contact_id,
                "agentId": self.config.agent_id,
                "teamId": self.config.team_id,
                "assignmentStrategy": strategy,
                "status": "queued",
            },
        )
