# api_server/db/node_runs.py
import logging
import uuid
from typing import Any, Dict, List, Optional

from api_server.db.engine import get_session
from api_server.db.models import WorkflowNodeRun
from automation.nodes.models import NodeRunStatus
from automation.timeutils import utcnow

logger = logging.getLogger(__name__)


def start_execution(
    tenant_id: str,
    run_id: str,
    node_id: str,
    node_type: str,
    input: Optional[Dict[str, Any]] = None,
) -> str:
    """Record that a node began executing. Returns the node run id."""
    node_run_id = str(uuid.uuid4())

    session = get_session()
    try:
        session.add(
            WorkflowNodeRun(
                id=node_run_id,
                tenant_id=tenant_id,
                run_id=run_id,
                node_id=node_id,
                node_type=node_type,
                status=NodeRunStatus.EXECUTING.value,
                input=input,
                executed_at=utcnow(),
            )
        )
        session.commit()
        return node_run_id
    finally:
        session.close()


def complete_execution(
    node_run_id: str,
    status: str,
    result: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> None:
    """Close out a node run as completed or failed."""
    session = get_session()
    try:
        row = session.get(WorkflowNodeRun, node_run_id)
        if row is None:
            raise LookupError(f"Node run {node_run_id} not found")

        row.status = status
        row.result = result
        row.error_message = error_message
        row.duration_ms = duration_ms
        session.commit()
    finally:
        session.close()


def list_node_runs(run_id: str, tenant_id: Optional[str] = None) -> List[WorkflowNodeRun]:
    """Audit trail of a run in execution order."""
    session = get_session()
    try:
        query = session.query(WorkflowNodeRun).filter(WorkflowNodeRun.run_id == run_id)
        if tenant_id is not None:
            query = query.filter(WorkflowNodeRun.tenant_id == tenant_id)
        return query.order_by(WorkflowNodeRun.executed_at.asc(), WorkflowNodeRun.created_at.asc()).all()
    finally:
        session.close()


def get_execution_stats(run_id: str) -> Dict[str, Any]:
    """Counts per status and the average duration of finished node runs."""
    rows = list_node_runs(run_id)
    durations = [r.duration_ms for r in rows if r.duration_ms is not None]

    return {
        "total": len(rows),
        "completed": sum(1 for r in rows if r.status == NodeRunStatus.COMPLETED.value),
        "failed": sum(1 for r in rows if r.status == NodeRunStatus.FAILED.value),
        "skipped": sum(1 for r in rows if r.status == NodeRunStatus.SKIPPED.value),
        "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
    }
