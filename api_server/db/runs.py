# api_server/db/runs.py
"""
Workflow run persistence.

Every status transition is a conditional UPDATE on the current status, so two
writers racing on the same run (a scheduler resume and an API cancel, or two
scheduler instances) cannot both win. Callers check the boolean result.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func

from api_server.db.engine import get_session
from api_server.db.models import ACTIVE_RUN_STATUSES, RunStatus, WorkflowRun
from automation.timeutils import utcnow

logger = logging.getLogger(__name__)


def create_run(
    tenant_id: str,
    workflow_id: str,
    contact_id: Optional[str],
    context: Dict[str, Any],
    current_node_id: Optional[str],
    correlation_id: Optional[str] = None,
) -> WorkflowRun:
    """Insert a PENDING run with its cursor at ``current_node_id``."""
    session = get_session()
    try:
        run = WorkflowRun(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            contact_id=contact_id,
            status=RunStatus.PENDING.value,
            current_node_id=current_node_id,
            context=context,
            correlation_id=correlation_id,
        )
        session.add(run)
        session.commit()
        logger.info("Created run %s for workflow %s (contact %s)", run.id, workflow_id, contact_id or "-")
        return run
    finally:
        session.close()


def get_run(run_id: str, tenant_id: Optional[str] = None) -> Optional[WorkflowRun]:
    """Get a run by ID, optionally scoped to a tenant."""
    session = get_session()
    try:
        query = session.query(WorkflowRun).filter(WorkflowRun.id == run_id)
        if tenant_id is not None:
            query = query.filter(WorkflowRun.tenant_id == tenant_id)
        return query.first()
    finally:
        session.close()


def list_runs(
    tenant_id: str,
    workflow_id: Optional[str] = None,
    status: Optional[str] = None,
    contact_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[WorkflowRun], int]:
    """
    List runs with filtering.

    Returns:
        (runs, total_count)
    """
    session = get_session()
    try:
        query = session.query(WorkflowRun).filter(WorkflowRun.tenant_id == tenant_id)

        if workflow_id:
            query = query.filter(WorkflowRun.workflow_id == workflow_id)
        if status:
            query = query.filter(WorkflowRun.status == status)
        if contact_id:
            query = query.filter(WorkflowRun.contact_id == contact_id)

        total = query.count()
        runs = query.order_by(WorkflowRun.created_at.desc()).offset(offset).limit(limit).all()

        return runs, total
    finally:
        session.close()


def find_active_runs(workflow_id: str, contact_id: str, tenant_id: str) -> List[WorkflowRun]:
    """Runs of ``workflow_id`` for ``contact_id`` that are pending, running or waiting."""
    session = get_session()
    try:
        return (
            session.query(WorkflowRun)
            .filter(WorkflowRun.tenant_id == tenant_id)
            .filter(WorkflowRun.workflow_id == workflow_id)
            .filter(WorkflowRun.contact_id == contact_id)
            .filter(WorkflowRun.status.in_(ACTIVE_RUN_STATUSES))
            .order_by(WorkflowRun.created_at.desc())
            .all()
        )
    finally:
        session.close()


def find_due_runs(batch_size: int = 100, now: Optional[datetime] = None) -> List[WorkflowRun]:
    """Waiting runs whose wake-up time has passed, earliest first (all tenants)."""
    now = now or utcnow()
    session = get_session()
    try:
        return (
            session.query(WorkflowRun)
            .filter(WorkflowRun.status == RunStatus.WAITING.value)
            .filter(WorkflowRun.next_execution_at.isnot(None))
            .filter(WorkflowRun.next_execution_at <= now)
            .order_by(WorkflowRun.next_execution_at.asc())
            .limit(batch_size)
            .all()
        )
    finally:
        session.close()


def _transition(
    run_id: str,
    from_statuses: Iterable[str],
    values: Dict[Any, Any],
    tenant_id: Optional[str] = None,
) -> bool:
    session = get_session()
    try:
        query = (
            session.query(WorkflowRun)
            .filter(WorkflowRun.id == run_id)
            .filter(WorkflowRun.status.in_(list(from_statuses)))
        )
        if tenant_id is not None:
            query = query.filter(WorkflowRun.tenant_id == tenant_id)
        updated = query.update(values, synchronize_session=False)
        session.commit()
        return bool(updated)
    finally:
        session.close()


def claim_run(run_id: str, tenant_id: str, from_status: str) -> bool:
    """Move a run to RUNNING if it is still in ``from_status``. False means someone else got it."""
    now = utcnow()
    return _transition(
        run_id,
        [from_status],
        {
            WorkflowRun.status: RunStatus.RUNNING.value,
            WorkflowRun.started_at: func.coalesce(WorkflowRun.started_at, now),
            WorkflowRun.next_execution_at: None,
        },
        tenant_id=tenant_id,
    )


def save_progress(run_id: str, current_node_id: Optional[str], context: Dict[str, Any]) -> bool:
    """Persist cursor and context of a running run."""
    return _transition(
        run_id,
        [RunStatus.RUNNING.value],
        {WorkflowRun.current_node_id: current_node_id, WorkflowRun.context: context},
    )


def set_waiting(
    run_id: str,
    next_execution_at: datetime,
    current_node_id: Optional[str],
    context: Dict[str, Any],
) -> bool:
    return _transition(
        run_id,
        [RunStatus.RUNNING.value],
        {
            WorkflowRun.status: RunStatus.WAITING.value,
            WorkflowRun.next_execution_at: next_execution_at,
            WorkflowRun.current_node_id: current_node_id,
            WorkflowRun.context: context,
        },
    )


def mark_completed(run_id: str, context: Optional[Dict[str, Any]] = None) -> bool:
    values: Dict[Any, Any] = {
        WorkflowRun.status: RunStatus.COMPLETED.value,
        WorkflowRun.completed_at: utcnow(),
        WorkflowRun.current_node_id: None,
        WorkflowRun.next_execution_at: None,
    }
    if context is not None:
        values[WorkflowRun.context] = context
    return _transition(run_id, [RunStatus.RUNNING.value], values)


def mark_failed(
    run_id: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    from_statuses: Iterable[str] = (RunStatus.RUNNING.value,),
) -> bool:
    """Fail a run. The cursor is kept so the audit trail shows where it stopped."""
    values: Dict[Any, Any] = {
        WorkflowRun.status: RunStatus.FAILED.value,
        WorkflowRun.completed_at: utcnow(),
        WorkflowRun.error_message: error_message,
        WorkflowRun.next_execution_at: None,
    }
    if context is not None:
        values[WorkflowRun.context] = context
    return _transition(run_id, from_statuses, values)


def cancel_run(run_id: str, tenant_id: str) -> bool:
    """Cancel a pending, running or waiting run."""
    cancelled = _transition(
        run_id,
        ACTIVE_RUN_STATUSES,
        {
            WorkflowRun.status: RunStatus.CANCELLED.value,
            WorkflowRun.completed_at: utcnow(),
            WorkflowRun.next_execution_at: None,
        },
        tenant_id=tenant_id,
    )
    if cancelled:
        logger.info("Run %s cancelled", run_id)
    return cancelled
