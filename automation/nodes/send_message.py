# automation/nodes/send_message.py
from __future__ import annotations

import logging

from automation.events import EventBus, WorkflowSubjects, send_message_event
from automation.nodes.base import WorkflowStep
from automation.nodes.models import NodeRunResult, NodeType, RunState, SendMessageConfig, WorkflowGraph

logger = logging.getLogger(__name__)


class SendMessageStep(WorkflowStep[SendMessageConfig]):
    """Queues a templated message for the run's contact on a delivery channel."""

    node_type = NodeType.SEND_MESSAGE
    config_model = SendMessageConfig

    def validate_input(self, run: RunState) -> None:
        self.require_contact(run, "sending message")

    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        """
        Emit a send-message intent. Delivery happens elsewhere; the step succeeds
        as soon as the intent is published.
        """
        contact_id = self.require_contact(run, "sending message")
        try:
            payload = send_message_event(
                tenant_id=run.tenant_id,
                workflow_id=run.workflow_id,
                run_id=run.run_id,
                contact_id=contact_id,
                channel=self.config.channel,
                template_id=self.config.template_id,
                variables=self.config.variables,
                correlation_id=run.correlation_id,
            )
            event_bus.publish(WorkflowSubjects.SEND_MESSAGE, payload, run.correlation_id)
        except Exception as e:
            logger.error("SendMessage publish failed for run %s: %s", run.run_id, e)
            return NodeRunResult(success=False, error=f"Failed to send message: {e}")

        logger.info(
            "SendMessage queued for run %s (channel=%s, template=%s)",
            run.run_id,
            self.config.channel,
            self.config.template_id,
        )
        return NodeRunResult(
            success=True,
            output={
                "channel": self.config.channel,
                "templateId": self.config.template_id,
                "contactId": contact_id,
                "status": "queued",
            },
        )
