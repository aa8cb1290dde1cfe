# api_server/services/triggers.py
import logging
import uuid
from typing import Any, Dict, List, Optional, cast

from pydantic import BaseModel, Field, ValidationError

from api_server.db import runs as runs_db
from api_server.db import workflows as workflows_db
from api_server.db.models import TriggerType, Workflow, WorkflowRun
from api_server.services import executor
from automation import conf
from automation.events import WorkflowSubjects, publish_quietly, trigger_matched_event
from automation.nodes.models import WorkflowGraph
from automation.timeutils import isoformat, utcnow
from automation.triggers import TriggerEventType, match_event, match_incoming_message, parse_trigger_config

logger = logging.getLogger(__name__)

INVALID_GRAPH_REASON = "Workflow graph cannot be executed"


class TriggerPayload(BaseModel):
    """A domain event offered to event-based workflows."""

    tenant_id: str
    event_type: str
    contact_id: Optional[str] = None
    event_payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None


class TriggerResult(BaseModel):
    triggered: bool
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None  # Run status after dispatch, when executed inline


def handle_incoming_message(
    tenant_id: str,
    contact_id: str,
    channel: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> List[TriggerResult]:
    """Start every published incoming-message workflow whose filters accept this message."""
    workflows = workflows_db.find_published(tenant_id, TriggerType.INCOMING_MESSAGE.value)
    logger.debug("Incoming %s message for contact %s: %d candidate workflow(s)", channel, contact_id, len(workflows))

    results: List[TriggerResult] = []
    for workflow in workflows:
        config = _trigger_config(workflow)
        if config is False or not match_incoming_message(config or None, channel, content):
            continue
        graph = _workflow_graph(workflow)
        if graph is None:
            continue

        now = isoformat(utcnow())
        context = {
            "triggerEvent": {
                "type": TriggerEventType.MESSAGE_RECEIVED.value,
                "payload": {"channel": channel, "content": content, **(metadata or {})},
                "timestamp": now,
            },
            "message": {
                "id": str(uuid.uuid4()),
                "channel": channel,
                "content": content,
                "metadata": metadata,
            },
        }
        run = _create_workflow_run(workflow, graph, tenant_id, contact_id, context, correlation_id)
        results.append(_dispatch(workflow, run))

    logger.info("Incoming message matched %d workflow(s) for tenant %s", len(results), tenant_id)
    return results


def handle_event(payload: TriggerPayload) -> List[TriggerResult]:
    """Start every published event-based workflow whose event filter and conditions match."""
    workflows = workflows_db.find_published(payload.tenant_id, TriggerType.EVENT_BASED.value)

    results: List[TriggerResult] = []
    for workflow in workflows:
        config = _trigger_config(workflow)
        if config is False or not match_event(config or None, payload.event_type, payload.event_payload):
            continue
        graph = _workflow_graph(workflow)
        if graph is None:
            continue

        context = {
            "triggerEvent": {
                "type": payload.event_type,
                "payload": payload.event_payload,
                "timestamp": isoformat(utcnow()),
            },
        }
        run = _create_workflow_run(workflow, graph, payload.tenant_id, payload.contact_id, context, payload.correlation_id)
        results.append(_dispatch(workflow, run))

    logger.info("Event %s matched %d workflow(s) for tenant %s", payload.event_type, len(results), payload.tenant_id)
    return results


def trigger_manually(
    workflow_id: str,
    contact_id: str,
    tenant_id: str,
    context: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> TriggerResult:
    """
    Start a published workflow for one contact.

    At most one active (pending, running or waiting) run may exist per
    workflow and contact; a second trigger is rejected and reports the
    existing run instead of creating another.
    """
    workflow = workflows_db.get_workflow(workflow_id, tenant_id)
    if workflow is None:
        return TriggerResult(triggered=False, workflow_id=workflow_id, reason="Workflow not found")

    if not workflow.is_published:
        return TriggerResult(triggered=False, workflow_id=workflow_id, reason="Workflow is not published")

    graph = _workflow_graph(workflow)
    if graph is None:
        return TriggerResult(triggered=False, workflow_id=workflow_id, reason=INVALID_GRAPH_REASON)

    active_runs = runs_db.find_active_runs(workflow_id, contact_id, tenant_id)
    if active_runs:
        logger.info("Manual trigger rejected: contact %s already in workflow %s", contact_id, workflow_id)
        return TriggerResult(
            triggered=False,
            workflow_id=workflow_id,
            run_id=cast(str, active_runs[0].id),
            reason="Contact already has an active run for this workflow",
            status=cast(str, active_runs[0].status),
        )

    run_context: Dict[str, Any] = {
        "triggerEvent": {
            "type": TriggerEventType.MANUAL.value,
            "payload": context or {},
            "timestamp": isoformat(utcnow()),
        },
        "variables": context or {},
    }
    run = _create_workflow_run(workflow, graph, tenant_id, contact_id, run_context, correlation_id)
    return _dispatch(workflow, run)


def handle_time_based(workflow: Workflow, correlation_id: Optional[str] = None) -> TriggerResult:
    """
    Start one run for a time-based workflow whose cron schedule is due.

    The run carries the schedule and segment in its trigger payload; fanning a
    segment out into per-contact runs belongs to the segment service, which
    listens for the trigger-matched event.
    """
    config = _trigger_config(workflow)
    if config is False:
        return TriggerResult(triggered=False, workflow_id=cast(str, workflow.id), reason="Invalid trigger config")
    graph = _workflow_graph(workflow)
    if graph is None:
        return TriggerResult(triggered=False, workflow_id=cast(str, workflow.id), reason=INVALID_GRAPH_REASON)

    trigger_payload = {
        "cronExpression": config.cron_expression if config else None,
        "segmentId": config.segment_id if config else None,
        "scheduledAt": isoformat(workflow.next_trigger_at) if workflow.next_trigger_at else None,
    }
    context = {
        "triggerEvent": {
            "type": TriggerEventType.SCHEDULE_DUE.value,
            "payload": trigger_payload,
            "timestamp": isoformat(utcnow()),
        },
    }
    run = _create_workflow_run(workflow, graph, cast(str, workflow.tenant_id), None, context, correlation_id)
    return _dispatch(workflow, run)


def dispatch_run(run_id: str, tenant_id: str) -> Optional[str]:
    """Execute a freshly created run inline when configured to. Returns the resulting status."""
    if not conf.EXECUTE_ON_TRIGGER:
        return None
    return executor.execute_run(run_id, tenant_id).status


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _trigger_config(workflow: Workflow):
    """Parsed trigger config, None when absent, False when unparseable (workflow is skipped)."""
    try:
        return parse_trigger_config(cast(Optional[Dict[str, Any]], workflow.trigger_config))
    except ValidationError as e:
        logger.warning("Skipping workflow %s: invalid trigger config: %s", workflow.id, e)
        return False


def _workflow_graph(workflow: Workflow) -> Optional[WorkflowGraph]:
    """Parsed graph, or None when the stored graph cannot be executed (workflow is skipped)."""
    try:
        return WorkflowGraph.model_validate(workflow.graph or {})
    except ValidationError as e:
        logger.warning("Skipping workflow %s: unreadable graph: %s", workflow.id, e)
        return None


def _create_workflow_run(
    workflow: Workflow,
    graph: WorkflowGraph,
    tenant_id: str,
    contact_id: Optional[str],
    context: Dict[str, Any],
    correlation_id: Optional[str],
) -> WorkflowRun:
    start = graph.start_node()

    run = runs_db.create_run(
        tenant_id=tenant_id,
        workflow_id=cast(str, workflow.id),
        contact_id=contact_id,
        context=context,
        current_node_id=start.id if start else None,
        correlation_id=correlation_id,
    )
    workflows_db.increment_stats(cast(str, workflow.id), "total_runs")

    publish_quietly(
        WorkflowSubjects.TRIGGER_MATCHED,
        trigger_matched_event(
            tenant_id=tenant_id,
            workflow_id=cast(str, workflow.id),
            trigger_type=cast(str, workflow.trigger_type),
            trigger_payload=context["triggerEvent"]["payload"],
            run_id=cast(str, run.id),
            contact_id=contact_id,
            correlation_id=correlation_id,
        ),
        correlation_id,
    )
    return run


def _dispatch(workflow: Workflow, run: WorkflowRun) -> TriggerResult:
    status = dispatch_run(cast(str, run.id), cast(str, run.tenant_id))
    return TriggerResult(
        triggered=True,
        workflow_id=cast(str, workflow.id),
        run_id=cast(str, run.id),
        status=status or cast(str, run.status),
    )
