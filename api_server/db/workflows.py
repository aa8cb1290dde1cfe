# api_server/db/workflows.py
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from api_server.db.engine import get_session
from api_server.db.models import Workflow
from automation.timeutils import utcnow

logger = logging.getLogger(__name__)

# Counters that increment_stats may touch
STAT_FIELDS = ("total_runs", "successful_runs", "failed_runs")


def create_workflow(
    tenant_id: str,
    name: str,
    trigger_type: str,
    graph: Dict[str, Any],
    description: Optional[str] = None,
    trigger_config: Optional[Dict[str, Any]] = None,
    created_by: Optional[str] = None,
) -> Workflow:
    """Insert a draft workflow and return it."""
    session = get_session()
    try:
        row = Workflow(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=name,
            description=description,
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            graph=graph,
            is_published=False,
            is_deleted=False,
            total_runs=0,
            successful_runs=0,
            failed_runs=0,
            created_by=created_by,
            updated_by=created_by,
        )
        session.add(row)
        session.commit()
        logger.info("Workflow created → %s (%s)", row.id, name)
        return row
    finally:
        session.close()


def get_workflow(workflow_id: str, tenant_id: Optional[str] = None, include_deleted: bool = False) -> Optional[Workflow]:
    session = get_session()
    try:
        query = session.query(Workflow).filter(Workflow.id == workflow_id)
        if tenant_id is not None:
            query = query.filter(Workflow.tenant_id == tenant_id)
        if not include_deleted:
            query = query.filter(Workflow.is_deleted == False)  # noqa: E712
        return query.first()
    finally:
        session.close()


def find_by_name(tenant_id: str, name: str, exclude_id: Optional[str] = None) -> Optional[Workflow]:
    """Find a live workflow by name within a tenant."""
    session = get_session()
    try:
        query = (
            session.query(Workflow)
            .filter(Workflow.tenant_id == tenant_id)
            .filter(Workflow.name == name)
            .filter(Workflow.is_deleted == False)  # noqa: E712
        )
        if exclude_id:
            query = query.filter(Workflow.id != exclude_id)
        return query.first()
    finally:
        session.close()


def list_workflows(
    tenant_id: str,
    trigger_type: Optional[str] = None,
    is_published: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Workflow], int]:
    """
    List live workflows for a tenant with filtering.

    Returns:
        (workflows, total_count)
    """
    session = get_session()
    try:
        query = (
            session.query(Workflow)
            .filter(Workflow.tenant_id == tenant_id)
            .filter(Workflow.is_deleted == False)  # noqa: E712
        )

        if trigger_type:
            query = query.filter(Workflow.trigger_type == trigger_type)
        if is_published is not None:
            query = query.filter(Workflow.is_published == is_published)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Workflow.name.ilike(pattern), Workflow.description.ilike(pattern)))

        total = query.count()
        workflows = query.order_by(Workflow.created_at.desc()).offset(offset).limit(limit).all()

        return workflows, total
    finally:
        session.close()


def find_published(tenant_id: str, trigger_type: str) -> List[Workflow]:
    """Published, live workflows of one trigger type, oldest first."""
    session = get_session()
    try:
        return (
            session.query(Workflow)
            .filter(Workflow.tenant_id == tenant_id)
            .filter(Workflow.trigger_type == trigger_type)
            .filter(Workflow.is_published == True)  # noqa: E712
            .filter(Workflow.is_deleted == False)  # noqa: E712
            .order_by(Workflow.created_at.asc())
            .all()
        )
    finally:
        session.close()


def find_due_time_based(now: Optional[datetime] = None, limit: int = 100) -> List[Workflow]:
    """Published time-based workflows whose next trigger time has passed (all tenants)."""
    now = now or utcnow()
    session = get_session()
    try:
        return (
            session.query(Workflow)
            .filter(Workflow.trigger_type == "time_based")
            .filter(Workflow.is_published == True)  # noqa: E712
            .filter(Workflow.is_deleted == False)  # noqa: E712
            .filter(Workflow.next_trigger_at.isnot(None))
            .filter(Workflow.next_trigger_at <= now)
            .order_by(Workflow.next_trigger_at.asc())
            .limit(limit)
            .all()
        )
    finally:
        session.close()


def update_workflow(workflow_id: str, tenant_id: str, **fields: Any) -> Optional[Workflow]:
    """Apply ``fields`` to a live workflow. Returns the updated row, or None if not found."""
    session = get_session()
    try:
        row = (
            session.query(Workflow)
            .filter(Workflow.id == workflow_id)
            .filter(Workflow.tenant_id == tenant_id)
            .filter(Workflow.is_deleted == False)  # noqa: E712
            .first()
        )
        if row is None:
            return None

        for key, value in fields.items():
            setattr(row, key, value)
        session.commit()
        logger.debug("Workflow %s updated: %s", workflow_id, ", ".join(sorted(fields)))
        return row
    finally:
        session.close()


def soft_delete(workflow_id: str, tenant_id: str, user_id: Optional[str] = None) -> bool:
    session = get_session()
    try:
        updated = (
            session.query(Workflow)
            .filter(Workflow.id == workflow_id)
            .filter(Workflow.tenant_id == tenant_id)
            .filter(Workflow.is_deleted == False)  # noqa: E712
            .update(
                {
                    Workflow.is_deleted: True,
                    Workflow.is_published: False,
                    Workflow.deleted_at: utcnow(),
                    Workflow.updated_by: user_id,
                    Workflow.next_trigger_at: None,
                },
                synchronize_session=False,
            )
        )
        session.commit()
        if updated:
            logger.info("Workflow %s soft-deleted", workflow_id)
        return bool(updated)
    finally:
        session.close()


def increment_stats(workflow_id: str, field: str) -> None:
    """Atomically bump one of the run counters."""
    if field not in STAT_FIELDS:
        raise ValueError(f"Unknown workflow stat: {field}")

    column = getattr(Workflow, field)
    session = get_session()
    try:
        session.query(Workflow).filter(Workflow.id == workflow_id).update(
            {column: column + 1}, synchronize_session=False
        )
        session.commit()
    finally:
        session.close()


def set_next_trigger_at(workflow_id: str, next_trigger_at: Optional[datetime]) -> None:
    session = get_session()
    try:
        session.query(Workflow).filter(Workflow.id == workflow_id).update(
            {Workflow.next_trigger_at: next_trigger_at}, synchronize_session=False
        )
        session.commit()
    finally:
        session.close()
