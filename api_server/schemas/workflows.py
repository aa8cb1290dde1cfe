# api_server/schemas/workflows.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from api_server.db.models import TriggerType


class WorkflowCreateRequest(BaseModel):
    """Request to create a draft workflow."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Optional[Dict[str, Any]] = Field(
        None, description="Trigger filters, e.g. {'channels': ['sms'], 'keywords': ['stop']}"
    )
    graph: Dict[str, Any] = Field(..., description="{'nodes': [...], 'edges': [...]}")


class WorkflowUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    graph: Optional[Dict[str, Any]] = None


class WorkflowResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Optional[Dict[str, Any]] = None
    graph: Dict[str, Any]
    is_published: bool
    published_at: Optional[datetime] = None
    published_by: Optional[str] = None
    next_trigger_at: Optional[datetime] = None
    total_runs: int
    successful_runs: int
    failed_runs: int
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class WorkflowListResponse(BaseModel):
    """List of workflows with pagination."""

    workflows: list[WorkflowResponse]
    total: int
    limit: int
    offset: int


class GraphValidateRequest(BaseModel):
    graph: Dict[str, Any]


class ValidationIssueResponse(BaseModel):
    code: str
    message: str
    node_id: Optional[str] = None
    field: Optional[str] = None


class GraphValidationResponse(BaseModel):
    is_valid: bool
    errors: List[ValidationIssueResponse] = []
    warnings: List[ValidationIssueResponse] = []
