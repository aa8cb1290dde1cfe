# api_server/routers/workflows.py
from datetime import datetime
from typing import Any, NoReturn, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from api_server.auth import get_correlation_id, get_tenant_id, get_user_id, verify_api_key
from api_server.db.models import TriggerType, Workflow
from api_server.schemas.workflows import (
    GraphValidateRequest,
    GraphValidationResponse,
    WorkflowCreateRequest,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowUpdateRequest,
)
from api_server.services import workflows as workflow_service
from api_server.services.workflows import (
    WorkflowConflictError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

router = APIRouter()


def _workflow_to_response(workflow: Workflow) -> WorkflowResponse:
    """Convert Workflow model to WorkflowResponse schema."""
    return WorkflowResponse(
        id=cast(str, workflow.id),
        tenant_id=cast(str, workflow.tenant_id),
        name=cast(str, workflow.name),
        description=cast(str | None, workflow.description),
        trigger_type=TriggerType(cast(str, workflow.trigger_type)),
        trigger_config=cast(dict[str, Any] | None, workflow.trigger_config),
        graph=cast(dict[str, Any], workflow.graph),
        is_published=cast(bool, workflow.is_published),
        published_at=cast(datetime | None, workflow.published_at),
        published_by=cast(str | None, workflow.published_by),
        next_trigger_at=cast(datetime | None, workflow.next_trigger_at),
        total_runs=cast(int, workflow.total_runs),
        successful_runs=cast(int, workflow.successful_runs),
        failed_runs=cast(int, workflow.failed_runs),
        created_by=cast(str | None, workflow.created_by),
        updated_by=cast(str | None, workflow.updated_by),
        created_at=cast(datetime, workflow.created_at),
        updated_at=cast(datetime, workflow.updated_at),
    )


def raise_for_workflow_error(e: WorkflowError) -> NoReturn:
    """Map lifecycle errors onto HTTP status codes."""
    if isinstance(e, WorkflowNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, WorkflowConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, WorkflowValidationError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": [issue.model_dump() for issue in e.issues]},
        )
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
def create_workflow_endpoint(
    request: WorkflowCreateRequest,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    """Create a draft workflow."""
    try:
        workflow = workflow_service.create_workflow(
            tenant_id=tenant_id,
            name=request.name,
            trigger_type=request.trigger_type.value,
            graph=request.graph,
            description=request.description,
            trigger_config=request.trigger_config,
            user_id=user_id,
            correlation_id=correlation_id,
        )
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return _workflow_to_response(workflow)


@router.get("/workflows", response_model=WorkflowListResponse)
def list_workflows_endpoint(
    trigger_type: TriggerType | None = Query(None, description="Filter by trigger type"),
    is_published: bool | None = Query(None, description="Filter by published state"),
    search: str | None = Query(None, description="Substring of name or description"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    """List workflows with filtering."""
    workflows, total = workflow_service.list_workflows(
        tenant_id,
        trigger_type=trigger_type.value if trigger_type else None,
        is_published=is_published,
        search=search,
        limit=limit,
        offset=offset,
    )
    return WorkflowListResponse(
        workflows=[_workflow_to_response(w) for w in workflows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/workflows/validate", response_model=GraphValidationResponse)
def validate_graph_endpoint(request: GraphValidateRequest, api_key: str = Depends(verify_api_key)):
    """Validate a graph without saving it."""
    result = workflow_service.validate_workflow_graph(request.graph)
    return GraphValidationResponse.model_validate(result.model_dump())


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
def get_workflow_endpoint(
    workflow_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        workflow = workflow_service.get_workflow(workflow_id, tenant_id)
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return _workflow_to_response(workflow)


@router.patch("/workflows/{workflow_id}", response_model=WorkflowResponse)
def update_workflow_endpoint(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    try:
        workflow = workflow_service.update_workflow(
            workflow_id,
            tenant_id,
            name=request.name,
            description=request.description,
            trigger_type=request.trigger_type.value if request.trigger_type else None,
            trigger_config=request.trigger_config,
            graph=request.graph,
            user_id=user_id,
            correlation_id=correlation_id,
        )
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return _workflow_to_response(workflow)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow_endpoint(
    workflow_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    try:
        workflow_service.delete_workflow(workflow_id, tenant_id, user_id, correlation_id)
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/workflows/{workflow_id}/publish", response_model=WorkflowResponse)
def publish_workflow_endpoint(
    workflow_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    """Publish a workflow so its trigger becomes live."""
    try:
        workflow = workflow_service.publish_workflow(workflow_id, tenant_id, user_id, correlation_id)
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return _workflow_to_response(workflow)


@router.post("/workflows/{workflow_id}/unpublish", response_model=WorkflowResponse)
def unpublish_workflow_endpoint(
    workflow_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    try:
        workflow = workflow_service.unpublish_workflow(workflow_id, tenant_id, user_id, correlation_id)
    except WorkflowError as e:
        raise_for_workflow_error(e)
    return _workflow_to_response(workflow)
