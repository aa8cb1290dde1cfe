# api_server/services/workflows.py
import logging
from typing import Any, Dict, List, Optional, cast

from pydantic import ValidationError

from api_server.db import workflows as workflows_db
from api_server.db.models import TriggerType, Workflow
from automation.events import WorkflowSubjects, lifecycle_event, publish_quietly
from automation.graph import ValidationIssue, ValidationResult, validate_graph
from automation.timeutils import utcnow
from automation.triggers import TriggerConfig, next_trigger_at, parse_trigger_config

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for workflow lifecycle errors."""


class WorkflowValidationError(WorkflowError):
    """The workflow definition is invalid; ``issues`` lists what is wrong."""

    def __init__(self, message: str, issues: Optional[List[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = issues or []


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f'Workflow with ID "{workflow_id}" not found')
        self.workflow_id = workflow_id


class WorkflowConflictError(WorkflowError):
    """A live workflow with the same name already exists in the tenant."""


class WorkflowStateError(WorkflowError):
    """The operation is not allowed in the workflow's current state."""


def create_workflow(
    tenant_id: str,
    name: str,
    trigger_type: str,
    graph: Dict[str, Any],
    description: Optional[str] = None,
    trigger_config: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Workflow:
    """
    Create a draft workflow.

    Raises:
        WorkflowConflictError: If the name is taken in this tenant
        WorkflowValidationError: If the graph, trigger type or trigger config is invalid
    """
    if workflows_db.find_by_name(tenant_id, name):
        raise WorkflowConflictError(f'Workflow with name "{name}" already exists')

    trigger_type = _check_trigger_type(trigger_type)
    _check_trigger_config(trigger_config)
    _require_valid_graph(graph, "Invalid workflow graph")

    workflow = workflows_db.create_workflow(
        tenant_id=tenant_id,
        name=name,
        trigger_type=trigger_type,
        graph=graph,
        description=description,
        trigger_config=trigger_config,
        created_by=user_id,
    )
    _publish_lifecycle(WorkflowSubjects.WORKFLOW_CREATED, workflow, user_id, correlation_id)
    return workflow


def get_workflow(workflow_id: str, tenant_id: str) -> Workflow:
    """Raises WorkflowNotFoundError for missing, deleted or other-tenant workflows."""
    workflow = workflows_db.get_workflow(workflow_id, tenant_id)
    if workflow is None:
        raise WorkflowNotFoundError(workflow_id)
    return workflow


def list_workflows(
    tenant_id: str,
    trigger_type: Optional[str] = None,
    is_published: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Workflow], int]:
    return workflows_db.list_workflows(
        tenant_id,
        trigger_type=trigger_type,
        is_published=is_published,
        search=search,
        limit=limit,
        offset=offset,
    )


def update_workflow(
    workflow_id: str,
    tenant_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    trigger_type: Optional[str] = None,
    trigger_config: Optional[Dict[str, Any]] = None,
    graph: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Workflow:
    """
    Apply a partial update. Fields left as None keep their current value.

    The graph of a published workflow is frozen; unpublish it first.
    """
    existing = get_workflow(workflow_id, tenant_id)

    if existing.is_published and graph is not None:
        raise WorkflowStateError("Cannot update graph of a published workflow. Unpublish first.")

    if name and name != existing.name and workflows_db.find_by_name(tenant_id, name, exclude_id=workflow_id):
        raise WorkflowConflictError(f'Workflow with name "{name}" already exists')

    fields: Dict[str, Any] = {"updated_by": user_id}
    if name is not None:
        fields["name"] = name
    if description is not None:
        fields["description"] = description
    if trigger_type is not None:
        fields["trigger_type"] = _check_trigger_type(trigger_type)
    if trigger_config is not None:
        _check_trigger_config(trigger_config)
        fields["trigger_config"] = trigger_config
    if graph is not None:
        _require_valid_graph(graph, "Invalid workflow graph")
        fields["graph"] = graph

    # A live schedule follows trigger changes
    if existing.is_published and ("trigger_type" in fields or "trigger_config" in fields):
        fields["next_trigger_at"] = _schedule_for(
            fields.get("trigger_type", existing.trigger_type),
            fields.get("trigger_config", existing.trigger_config),
        )

    updated = workflows_db.update_workflow(workflow_id, tenant_id, **fields)
    if updated is None:
        raise WorkflowNotFoundError(workflow_id)

    _publish_lifecycle(WorkflowSubjects.WORKFLOW_UPDATED, updated, user_id, correlation_id)
    return updated


def delete_workflow(
    workflow_id: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    """Soft-delete: the row stays for run history but disappears from every lookup."""
    existing = get_workflow(workflow_id, tenant_id)
    if not workflows_db.soft_delete(workflow_id, tenant_id, user_id):
        raise WorkflowNotFoundError(workflow_id)

    _publish_lifecycle(WorkflowSubjects.WORKFLOW_DELETED, existing, user_id, correlation_id)


def publish_workflow(
    workflow_id: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Workflow:
    """
    Make a workflow eligible for triggering.

    The graph is validated again; time-based workflows get their first
    ``next_trigger_at`` from the cron expression.
    """
    existing = get_workflow(workflow_id, tenant_id)
    if existing.is_published:
        raise WorkflowStateError("Workflow is already published")

    _require_valid_graph(cast(Dict[str, Any], existing.graph), "Cannot publish workflow with invalid graph")

    fields: Dict[str, Any] = {
        "is_published": True,
        "published_at": utcnow(),
        "published_by": user_id,
        "updated_by": user_id,
    }
    if existing.trigger_type == TriggerType.TIME_BASED.value:
        upcoming = _schedule_for(cast(str, existing.trigger_type), existing.trigger_config)
        if upcoming is None:
            raise WorkflowValidationError(
                "Cannot publish time-based workflow without a schedule",
                [
                    ValidationIssue(
                        code="MISSING_SCHEDULE",
                        message="Time-based workflow has no upcoming trigger time",
                        field="triggerConfig.cronExpression",
                    )
                ],
            )
        fields["next_trigger_at"] = upcoming

    published = workflows_db.update_workflow(workflow_id, tenant_id, **fields)
    if published is None:
        raise WorkflowNotFoundError(workflow_id)

    logger.info("Workflow %s published (%s)", workflow_id, published.trigger_type)
    _publish_lifecycle(WorkflowSubjects.WORKFLOW_PUBLISHED, published, user_id, correlation_id)
    return published


def unpublish_workflow(
    workflow_id: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Workflow:
    """Stop new triggers. Runs already in flight continue."""
    existing = get_workflow(workflow_id, tenant_id)
    if not existing.is_published:
        raise WorkflowStateError("Workflow is not published")

    unpublished = workflows_db.update_workflow(
        workflow_id,
        tenant_id,
        is_published=False,
        next_trigger_at=None,
        updated_by=user_id,
    )
    if unpublished is None:
        raise WorkflowNotFoundError(workflow_id)

    logger.info("Workflow %s unpublished", workflow_id)
    _publish_lifecycle(WorkflowSubjects.WORKFLOW_UNPUBLISHED, unpublished, user_id, correlation_id)
    return unpublished


def validate_workflow_graph(graph: Optional[Dict[str, Any]]) -> ValidationResult:
    """Dry-run validation; never raises for an invalid graph."""
    return validate_graph(graph)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _check_trigger_type(trigger_type: str) -> str:
    try:
        return TriggerType(trigger_type).value
    except ValueError:
        raise WorkflowValidationError(
            f"Invalid trigger type: {trigger_type}",
            [ValidationIssue(code="INVALID_TRIGGER_TYPE", message=f"Unknown trigger type: {trigger_type}", field="triggerType")],
        )


def _check_trigger_config(trigger_config: Optional[Dict[str, Any]]) -> Optional[TriggerConfig]:
    try:
        return parse_trigger_config(trigger_config)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                code="INVALID_TRIGGER_CONFIG",
                message=err["msg"],
                field="triggerConfig." + ".".join(str(part) for part in err["loc"]),
            )
            for err in e.errors()
        ]
        raise WorkflowValidationError("Invalid trigger configuration", issues)


def _require_valid_graph(graph: Optional[Dict[str, Any]], message: str) -> None:
    result = validate_graph(graph)
    if not result.is_valid:
        logger.info("%s: %s", message, ", ".join(result.error_codes()))
        raise WorkflowValidationError(message, result.errors)


def _schedule_for(trigger_type: Any, trigger_config: Any):
    """First trigger time of a time-based workflow; None for other trigger types."""
    if trigger_type != TriggerType.TIME_BASED.value:
        return None

    config = _check_trigger_config(trigger_config)
    try:
        return next_trigger_at(config)
    except ValueError as e:
        raise WorkflowValidationError(
            str(e),
            [ValidationIssue(code="INVALID_SCHEDULE", message=str(e), field="triggerConfig")],
        )


def _publish_lifecycle(subject: str, workflow: Workflow, user_id: Optional[str], correlation_id: Optional[str]) -> None:
    publish_quietly(
        subject,
        lifecycle_event(
            tenant_id=cast(str, workflow.tenant_id),
            workflow_id=cast(str, workflow.id),
            workflow_name=cast(str, workflow.name),
            trigger_type=cast(str, workflow.trigger_type),
            user_id=user_id,
            correlation_id=correlation_id,
        ),
        correlation_id,
    )
