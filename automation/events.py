"""Outbound event sink for workflow progress and intent events."""

from __future__ import annotations

import abc
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

import redis

from automation import conf

logger = logging.getLogger(__name__)


class WorkflowSubjects:
    """Namespaced event subjects."""

    # Lifecycle
    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_UPDATED = "workflow.updated"
    WORKFLOW_DELETED = "workflow.deleted"
    WORKFLOW_PUBLISHED = "workflow.published"
    WORKFLOW_UNPUBLISHED = "workflow.unpublished"

    # Runs
    RUN_STARTED = "workflow.run.started"
    RUN_COMPLETED = "workflow.run.completed"
    RUN_FAILED = "workflow.run.failed"
    RUN_WAITING = "workflow.run.waiting"
    RUN_CANCELLED = "workflow.run.cancelled"

    # Nodes
    NODE_COMPLETED = "workflow.node.completed"
    NODE_FAILED = "workflow.node.failed"

    # Triggers
    TRIGGER_MATCHED = "workflow.trigger.matched"

    # Intents for external collaborators
    SEND_MESSAGE = "workflow.send_message"
    ASSIGN_AGENT = "workflow.assign_agent"
    UPDATE_ATTRIBUTE = "workflow.update_attribute"


class PublishedEvent(NamedTuple):
    subject: str
    payload: Dict[str, Any]
    correlation_id: Optional[str]


class EventBus(metaclass=abc.ABCMeta):
    """Fire-and-forget publisher."""

    @abc.abstractmethod
    def publish(self, subject: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        """Publish ``payload`` under ``subject``. May raise on transport errors."""
        raise NotImplementedError

    def close(self) -> None:
        """Release transport resources (no-op by default)."""
        pass


class InMemoryEventBus(EventBus):
    """Keeps published events in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        self.events: List[PublishedEvent] = []
        self._lock = threading.Lock()

    def publish(self, subject: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        with self._lock:
            self.events.append(PublishedEvent(subject, payload, correlation_id))

    def of(self, subject: str) -> List[PublishedEvent]:
        with self._lock:
            return [event for event in self.events if event.subject == subject]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class LoggingEventBus(EventBus):
    """Writes every event to the log; for deployments without a broker."""

    def publish(self, subject: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        logger.info("Event %s [correlation_id=%s] %s", subject, correlation_id or "-", json.dumps(payload, default=str))


class RedisEventBus(EventBus):
    """Publishes events as JSON on Redis pub/sub channels ``<prefix>.<subject>``."""

    def __init__(self, url: str, prefix: str = "automation") -> None:
        self.prefix = prefix
        self._redis = redis.Redis.from_url(url, decode_responses=True)

    def publish(self, subject: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        envelope = {"subject": subject, "correlationId": correlation_id, "data": payload}
        self._redis.publish(f"{self.prefix}.{subject}", json.dumps(envelope, default=str))

    def close(self) -> None:
        self._redis.close()


# Cache the bus to avoid reconnecting on every publish
_event_bus: Optional[EventBus] = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide event bus for the configured backend."""
    global _event_bus
    with _bus_lock:
        if _event_bus is None:
            _event_bus = create_event_bus(conf.EVENT_BUS_BACKEND)
        return _event_bus


def set_event_bus(bus: Optional[EventBus]) -> None:
    """Replace the process-wide bus (``None`` resets to the configured backend)."""
    global _event_bus
    with _bus_lock:
        _event_bus = bus


def create_event_bus(backend: str) -> EventBus:
    backend = backend.lower()
    if backend == "memory":
        return InMemoryEventBus()
    if backend == "log":
        return LoggingEventBus()
    if backend == "redis":
        return RedisEventBus(conf.REDIS_URL, prefix=conf.EVENT_SUBJECT_PREFIX)
    raise ValueError(f"Unsupported event bus backend: {backend}")


def publish_quietly(
    subject: str,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
    bus: Optional[EventBus] = None,
) -> None:
    """Publish a progress event; transport failures are logged and swallowed."""
    try:
        (bus or get_event_bus()).publish(subject, payload, correlation_id)
    except Exception as e:
        logger.warning("Failed to publish event %s: %s", subject, e)


# ----------------------------------------------------------------------
# Event payloads
# ----------------------------------------------------------------------
def _envelope(tenant_id: str, correlation_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "eventId": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "tenantId": tenant_id,
        "correlationId": correlation_id,
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    return payload


def lifecycle_event(
    tenant_id: str,
    workflow_id: str,
    workflow_name: str,
    trigger_type: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        workflowName=workflow_name,
        triggerType=trigger_type,
        userId=user_id,
    )


def run_event(
    tenant_id: str,
    workflow_id: str,
    workflow_name: str,
    run_id: str,
    status: str,
    contact_id: Optional[str] = None,
    error_message: Optional[str] = None,
    correlation_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        workflowName=workflow_name,
        runId=run_id,
        contactId=contact_id,
        status=status,
        errorMessage=error_message,
        **extra,
    )


def node_event(
    tenant_id: str,
    workflow_id: str,
    run_id: str,
    node_id: str,
    node_type: str,
    status: str,
    output: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
    duration_ms: Optional[int] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        runId=run_id,
        nodeId=node_id,
        nodeType=node_type,
        status=status,
        output=output,
        errorMessage=error_message,
        durationMs=duration_ms,
    )


def trigger_matched_event(
    tenant_id: str,
    workflow_id: str,
    trigger_type: str,
    trigger_payload: Dict[str, Any],
    run_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        triggerType=trigger_type,
        triggerPayload=trigger_payload,
        runId=run_id,
        contactId=contact_id,
    )


def send_message_event(
    tenant_id: str,
    workflow_id: str,
    run_id: str,
    contact_id: str,
    channel: str,
    template_id: str,
    variables: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        runId=run_id,
        contactId=contact_id,
        channel=channel,
        templateId=template_id,
        variables=variables,
    )


def assign_agent_event(
    tenant_id: str,
    workflow_id: str,
    run_id: str,
    contact_id: str,
    agent_id: Optional[str] = None,
    team_id: Optional[str] = None,
    assignment_strategy: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    return _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        runId=run_id,
        contactId=contact_id,
        agentId=agent_id,
        teamId=team_id,
        assignmentStrategy=assignment_strategy,
    )


def update_attribute_event(
    tenant_id: str,
    workflow_id: str,
    run_id: str,
    contact_id: str,
    attribute_name: str,
    attribute_value: Any,
    operation: str,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    payload = _envelope(
        tenant_id,
        correlation_id,
        workflowId=workflow_id,
        runId=run_id,
        contactId=contact_id,
        attributeName=attribute_name,
        operation=operation,
    )
    # null is a meaningful value here, so it is always carried
    payload["attributeValue"] = attribute_value
    return payload
