# api_server/db/models.py
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

from automation.timeutils import utcnow

Base = declarative_base()


class TriggerType(str, Enum):
    INCOMING_MESSAGE = "incoming_message"
    EVENT_BASED = "event_based"
    TIME_BASED = "time_based"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value, RunStatus.WAITING.value)
TERMINAL_RUN_STATUSES = (RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.CANCELLED.value)


class Workflow(Base):
    """Automation definition: a trigger plus a graph of steps."""

    __tablename__ = "workflows"

    id = Column(String, primary_key=True)  # UUID
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String(255), nullable=False)  # Unique per tenant among non-deleted rows
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False, index=True)  # "incoming_message", "event_based", "time_based"
    trigger_config = Column(JSON, nullable=True)
    graph = Column(JSON, nullable=False)  # {"nodes": [...], "edges": [...], "viewport": {...}}
    is_published = Column(Boolean, default=False, nullable=False, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    published_by = Column(String, nullable=True)
    next_trigger_at = Column(DateTime(timezone=True), nullable=True, index=True)  # time_based only
    total_runs = Column(Integer, default=0, nullable=False)
    successful_runs = Column(Integer, default=0, nullable=False)
    failed_runs = Column(Integer, default=0, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class WorkflowRun(Base):
    """One execution of a workflow for a contact; holds the resumable cursor."""

    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)  # UUID
    tenant_id = Column(String, nullable=False, index=True)
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=RunStatus.PENDING.value, index=True)
    current_node_id = Column(String(100), nullable=True)  # Cursor
    context = Column(JSON, nullable=True)
    next_execution_at = Column(DateTime(timezone=True), nullable=True, index=True)  # Set while waiting
    correlation_id = Column(String(255), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class WorkflowNodeRun(Base):
    """Append-only audit record of one node execution within a run."""

    __tablename__ = "workflow_node_runs"

    id = Column(String, primary_key=True)  # UUID
    tenant_id = Column(String, nullable=False, index=True)
    run_id = Column(String, ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    node_id = Column(String(100), nullable=False)
    node_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending/executing/completed/failed/skipped
    input = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
