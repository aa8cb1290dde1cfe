# api_server/routers/runs.py
import logging
from datetime import datetime
from typing import Any, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api_server.auth import get_correlation_id, get_tenant_id, verify_api_key
from api_server.db.models import RunStatus, WorkflowNodeRun, WorkflowRun
from api_server.routers.workflows import raise_for_workflow_error
from api_server.schemas.runs import (
    ExecutionStatsResponse,
    NodeRunResponse,
    RunDetailResponse,
    RunListResponse,
    RunResponse,
    RunResultResponse,
    TriggerRequest,
    TriggerResponse,
)
from api_server.services import executor
from api_server.services import workflows as workflow_service
from api_server.services.triggers import trigger_manually
from api_server.services.workflows import WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter()


def _run_fields(run: WorkflowRun) -> dict[str, Any]:
    return dict(
        run_id=cast(str, run.id),
        workflow_id=cast(str, run.workflow_id),
        tenant_id=cast(str, run.tenant_id),
        contact_id=cast(str | None, run.contact_id),
        status=cast(str, run.status),
        current_node_id=cast(str | None, run.current_node_id),
        context=cast(dict[str, Any] | None, run.context),
        next_execution_at=cast(datetime | None, run.next_execution_at),
        correlation_id=cast(str | None, run.correlation_id),
        started_at=cast(datetime | None, run.started_at),
        completed_at=cast(datetime | None, run.completed_at),
        error_message=cast(str | None, run.error_message),
        created_at=cast(datetime, run.created_at),
        updated_at=cast(datetime, run.updated_at),
    )


def _run_to_response(run: WorkflowRun) -> RunResponse:
    """Convert WorkflowRun model to RunResponse schema."""
    return RunResponse(**_run_fields(run))


def _node_run_to_response(node_run: WorkflowNodeRun) -> NodeRunResponse:
    return NodeRunResponse(
        id=cast(str, node_run.id),
        node_id=cast(str, node_run.node_id),
        node_type=cast(str, node_run.node_type),
        status=cast(str, node_run.status),
        input=cast(dict[str, Any] | None, node_run.input),
        result=cast(dict[str, Any] | None, node_run.result),
        error_message=cast(str | None, node_run.error_message),
        duration_ms=cast(int | None, node_run.duration_ms),
        executed_at=cast(datetime | None, node_run.executed_at),
    )


def _require_workflow(workflow_id: str, tenant_id: str) -> None:
    try:
        workflow_service.get_workflow(workflow_id, tenant_id)
    except WorkflowError as e:
        raise_for_workflow_error(e)


def _require_run(workflow_id: str, run_id: str, tenant_id: str) -> WorkflowRun:
    run = executor.get_run(run_id, tenant_id)
    if not run or run.workflow_id != workflow_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return run


@router.post("/workflows/{workflow_id}/trigger", response_model=TriggerResponse)
def trigger_workflow_endpoint(
    workflow_id: str,
    request: TriggerRequest,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
    correlation_id: Optional[str] = Depends(get_correlation_id),
):
    """
    Start a published workflow for a contact.

    A contact with an active run in this workflow is not started again; the
    response carries ``triggered=false`` and the existing run id.
    """
    _require_workflow(workflow_id, tenant_id)

    result = trigger_manually(
        workflow_id,
        request.contact_id,
        tenant_id,
        context=request.context,
        correlation_id=correlation_id,
    )
    if not result.triggered and not result.run_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.reason)

    logger.info("Manual trigger of workflow %s for contact %s → %s", workflow_id, request.contact_id, result.run_id)
    return TriggerResponse(**result.model_dump())


@router.get("/workflows/{workflow_id}/runs", response_model=RunListResponse)
def list_runs_endpoint(
    workflow_id: str,
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of runs to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    """List runs of a workflow with filtering."""
    _require_workflow(workflow_id, tenant_id)
    runs, total = executor.list_runs(tenant_id, workflow_id=workflow_id, status=status, limit=limit, offset=offset)

    return RunListResponse(
        runs=[_run_to_response(run) for run in runs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/workflows/{workflow_id}/runs/{run_id}", response_model=RunDetailResponse)
def get_run_endpoint(
    workflow_id: str,
    run_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    """Get run status with its node-run audit trail."""
    found = executor.get_run_with_node_runs(run_id, tenant_id)
    if not found or found[0].workflow_id != workflow_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    run, node_runs = found
    return RunDetailResponse(
        **_run_fields(run),
        node_runs=[_node_run_to_response(n) for n in node_runs],
        stats=ExecutionStatsResponse(**executor.get_execution_stats(run_id)),
    )


@router.post("/workflows/{workflow_id}/runs/{run_id}/cancel", response_model=RunResponse)
def cancel_run_endpoint(
    workflow_id: str,
    run_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    """Cancel a pending, running or waiting run."""
    run = _require_run(workflow_id, run_id, tenant_id)

    if not executor.cancel_run(run_id, tenant_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run cannot be cancelled in status: {run.status}",
        )

    return _run_to_response(_require_run(workflow_id, run_id, tenant_id))


@router.post("/workflows/{workflow_id}/runs/{run_id}/resume", response_model=RunResultResponse)
def resume_run_endpoint(
    workflow_id: str,
    run_id: str,
    api_key: str = Depends(verify_api_key),
    tenant_id: str = Depends(get_tenant_id),
):
    """
    Drive a run now: a PENDING run is executed from START, a WAITING run is
    resumed at its cursor without waiting for its delay to elapse.
    """
    run = _require_run(workflow_id, run_id, tenant_id)

    if run.status == RunStatus.PENDING.value:
        result = executor.execute_run(run_id, tenant_id)
    elif run.status == RunStatus.WAITING.value:
        result = executor.resume_run(run_id, tenant_id)
    else:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run cannot be resumed in status: {run.status}",
        )

    return RunResultResponse(**result.model_dump())
