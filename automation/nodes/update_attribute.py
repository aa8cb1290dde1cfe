# automation/nodes/update_attribute.py
from __future__ import annotations

import logging

from automation.events import EventBus, WorkflowSubjects, update_attribute_event
from automation.nodes.base import WorkflowStep
from automation.nodes.models import NodeRunResult, NodeType, RunState, UpdateAttributeConfig, WorkflowGraph

logger = logging.getLogger(__name__)


class UpdateAttributeStep(WorkflowStep[UpdateAttributeConfig]):
    """Requests a contact attribute write from the contact service."""

    node_type = NodeType.UPDATE_ATTRIBUTE
    config_model = UpdateAttributeConfig

    def validate_input(self, run: RunState) -> None:
        self.require_contact(run, "updating attribute")

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        contact_id = self.require_contact(run, "updating attribute")
        try:
            payload = update_attribute_event(
                tenant_id=run.tenant_id,
                workflow_id=run.workflow_id,
                run_id=run.run_id,
                contact_id=contact_id,
                attribute_name=self.config.attribute_name,
                attribute_value=self.config.attribute_value,
                operation=self.config.operation,
                correlation_id=run.correlation_id,
            )
            event_bus.publish(WorkflowSubjects.UPDATE_ATTRIBUTE, payload, run.correlation_id)
        except Exception as e:
            logger.error("UpdateAttribute publish failed for run %s: %s", run.run_id, e)
            return NodeRunResult(success=False, error=f"Failed to update attribute: {e}")

        logger.info(
            "UpdateAttribute queued for contact %s (%s %s)",
            contact_id,
            self.config.operation,
            self.config.attribute_name,
        )
        return NodeRunResult(
            success=True,
            output={
                "contactId": contact_id,
                "attributeName": self.config.attribute_name,
                "attributeValue": self.config.attribute_value,
                "operation": self.config.operation,
                "status": "pending",
            },
        )
