# api_server/schemas/runs.py
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TriggerRequest(BaseModel):
    """Request to start a published workflow for one contact."""

    contact_id: str = Field(..., min_length=1, description="Contact that enters the workflow")
    context: Optional[Dict[str, Any]] = Field(None, description="Variables exposed to the run as context.variables")


class TriggerResponse(BaseModel):
    triggered: bool
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None


class RunResponse(BaseModel):
    """Run status and cursor."""

    run_id: str
    workflow_id: str
    tenant_id: str
    contact_id: Optional[str] = None
    status: str  # "pending", "running", "waiting", "completed", "failed", "cancelled"
    current_node_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    next_execution_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class NodeRunResponse(BaseModel):
    id: str
    node_id: str
    node_type: str
    status: str
    input: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    executed_at: Optional[datetime] = None


class ExecutionStatsResponse(BaseModel):
    total: int
    completed: int
    failed: int
    skipped: int
    avg_duration_ms: int


class RunDetailResponse(RunResponse):
    """Run together with its node-level audit trail."""

    node_runs: list[NodeRunResponse]
    stats: ExecutionStatsResponse


class RunListResponse(BaseModel):
    """List of runs with pagination."""

    runs: list[RunResponse]
    total: int
    limit: int
    offset: int


class RunResultResponse(BaseModel):
    """Outcome of a resume."""

    run_id: str
    status: str
    completed_nodes: int = 0
    failed_nodes: int = 0
    error: Optional[str] = None
