# api_server/services/executor.py
import logging
import time
from typing import Any, Dict, List, Optional, cast

from pydantic import BaseModel

from api_server.db import node_runs as node_runs_db
from api_server.db import runs as runs_db
from api_server.db import workflows as workflows_db
from api_server.db.models import RunStatus, Workflow, WorkflowNodeRun, WorkflowRun
from automation.events import (
    EventBus,
    WorkflowSubjects,
    get_event_bus,
    node_event,
    publish_quietly,
    run_event,
)
from automation.nodes.models import GraphNode, NodeRunStatus, NodeType, RunState, WorkflowGraph
from automation.nodes.runner import execute_node
from automation.timeutils import isoformat, parse_iso, utcnow

logger = logging.getLogger(__name__)


# Structured logging adapter that includes run_id and workflow_id
class RunLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        run_id = str(extra.get("run_id", "unknown"))[:8]
        workflow_id = str(extra.get("workflow_id", "unknown"))[:8]
        formatted_msg = f"[run_id={run_id}] [workflow={workflow_id}] {msg}"
        return formatted_msg, kwargs


class RunResult(BaseModel):
    """Outcome of driving a run until it stops."""

    run_id: str
    status: str
    completed_nodes: int = 0
    failed_nodes: int = 0
    error: Optional[str] = None


class RunNotClaimable(Exception):
    """The run is not in the status the entry point expects; nothing was changed."""

    def __init__(self, status: str, message: str):
        super().__init__(message)
        self.status = status


class _RunInterrupted(Exception):
    """A status write found the run no longer RUNNING (cancelled concurrently)."""


def execute_run(run_id: str, tenant_id: str, event_bus: Optional[EventBus] = None) -> RunResult:
    """
    Drive a PENDING run from its START node until it waits, completes or fails.

    Never raises: every failure comes back as a FAILED RunResult after the run
    has been marked failed (best effort).

    Updates run status: pending → running → waiting/completed/failed
    """
    bus = event_bus or get_event_bus()
    run_logger = RunLoggerAdapter(logger, {"run_id": run_id})

    try:
        run = _load_run(run_id, tenant_id)
        if run.status != RunStatus.PENDING.value:
            raise RunNotClaimable(run.status, f"Run is not in PENDING status: {run.status}")

        workflow = _load_workflow(run)
        run_logger = RunLoggerAdapter(logger, {"run_id": run_id, "workflow_id": run.workflow_id})

        if not runs_db.claim_run(run_id, tenant_id, RunStatus.PENDING.value):
            raise RunNotClaimable(_current_status(run_id), "Run was claimed by another worker")

        run_logger.info("Run started (contact=%s)", run.contact_id or "-")
        publish_quietly(
            WorkflowSubjects.RUN_STARTED,
            run_event(
                tenant_id=tenant_id,
                workflow_id=cast(str, workflow.id),
                workflow_name=cast(str, workflow.name),
                run_id=run_id,
                status=RunStatus.RUNNING.value,
                contact_id=run.contact_id,
                correlation_id=run.correlation_id,
            ),
            run.correlation_id,
            bus=bus,
        )

        return _execute_graph(run, workflow, None, bus, run_logger)

    except RunNotClaimable as e:
        run_logger.warning("Skipping run: %s", e)
        return RunResult(run_id=run_id, status=e.status, error=str(e))

    except Exception as e:
        run_logger.error("Run execution failed with exception: %s", e, exc_info=True)
        return _fail_safely(run_id, str(e), (RunStatus.PENDING.value, RunStatus.RUNNING.value), bus, run_logger)


def resume_run(run_id: str, tenant_id: str, event_bus: Optional[EventBus] = None) -> RunResult:
    """
    Continue a WAITING run from its persisted cursor.

    Same algorithm as execute_run; the claim (waiting → running) is a
    conditional update, so a run resumed twice concurrently only runs once.
    """
    bus = event_bus or get_event_bus()
    run_logger = RunLoggerAdapter(logger, {"run_id": run_id})

    try:
        run = _load_run(run_id, tenant_id)
        if run.status != RunStatus.WAITING.value:
            raise RunNotClaimable(run.status, f"Run is not in WAITING status: {run.status}")

        workflow = _load_workflow(run)
        run_logger = RunLoggerAdapter(logger, {"run_id": run_id, "workflow_id": run.workflow_id})

        if not runs_db.claim_run(run_id, tenant_id, RunStatus.WAITING.value):
            raise RunNotClaimable(_current_status(run_id), "Run was claimed by another worker")

        run_logger.info("Run resumed at node %s", run.current_node_id)
        return _execute_graph(run, workflow, run.current_node_id, bus, run_logger, resuming=True)

    except RunNotClaimable as e:
        run_logger.warning("Skipping resume: %s", e)
        return RunResult(run_id=run_id, status=e.status, error=str(e))

    except Exception as e:
        run_logger.error("Run resume failed with exception: %s", e, exc_info=True)
        return _fail_safely(run_id, str(e), (RunStatus.WAITING.value, RunStatus.RUNNING.value), bus, run_logger)


# ----------------------------------------------------------------------
# Graph walk
# ----------------------------------------------------------------------
def _execute_graph(
    run: WorkflowRun,
    workflow: Workflow,
    start_node_id: Optional[str],
    bus: EventBus,
    run_logger: RunLoggerAdapter,
    resuming: bool = False,
) -> RunResult:
    graph = WorkflowGraph.model_validate(workflow.graph or {})
    adjacency = graph.adjacency()
    context: Dict[str, Any] = dict(run.context or {})

    state = RunState(
        run_id=cast(str, run.id),
        tenant_id=cast(str, run.tenant_id),
        workflow_id=cast(str, run.workflow_id),
        contact_id=run.contact_id,
        correlation_id=run.correlation_id,
        context=context,
    )

    if resuming:
        current_node_id = start_node_id
    else:
        start = graph.start_node()
        if start is None:
            raise RuntimeError("No start node found in workflow graph")
        current_node_id = start.id

    completed_nodes = 0
    failed_nodes = 0

    try:
        while current_node_id:
            node = graph.get_node(current_node_id)
            if node is None:
                raise RuntimeError(f"Node not found: {current_node_id}")

            # START has no audit record; it only hands off to its first target
            if node.type == NodeType.START.value:
                current_node_id = _next_node_id(adjacency, node.id)
                continue

            node_run_id = node_runs_db.start_execution(
                tenant_id=state.tenant_id,
                run_id=state.run_id,
                node_id=node.id,
                node_type=node.type,
                input=node.data,
            )
            started = time.monotonic()
            result = execute_node(node.type, node, state, graph, bus)
            duration_ms = int((time.monotonic() - started) * 1000)

            if not result.success:
                failed_nodes += 1
                error = result.error or "Node execution failed"
                node_runs_db.complete_execution(
                    node_run_id, NodeRunStatus.FAILED.value, result.to_record(), error, duration_ms
                )
                context = _record_error(context, node, error)
                run_logger.warning("Node %s (%s) failed: %s", node.id, node.type, error)

                if not runs_db.mark_failed(state.run_id, error, context):
                    raise _RunInterrupted()
                workflows_db.increment_stats(state.workflow_id, "failed_runs")

                _publish_node(bus, state, node, NodeRunStatus.FAILED.value, None, error, duration_ms)
                _publish_run(bus, state, workflow, WorkflowSubjects.RUN_FAILED, RunStatus.FAILED.value, error)
                return RunResult(
                    run_id=state.run_id,
                    status=RunStatus.FAILED.value,
                    completed_nodes=completed_nodes,
                    failed_nodes=failed_nodes,
                    error=error,
                )

            completed_nodes += 1
            node_runs_db.complete_execution(
                node_run_id, NodeRunStatus.COMPLETED.value, result.to_record(), None, duration_ms
            )
            context = {**context, "lastNodeId": node.id, "lastNodeResult": result.output}
            state.context = context
            run_logger.debug("Node %s (%s) completed in %d ms", node.id, node.type, duration_ms)
            _publish_node(bus, state, node, NodeRunStatus.COMPLETED.value, result.output, None, duration_ms)

            # DELAY: persist the cursor and hand control back to the caller
            if result.wait_until:
                next_node_id = result.next_node_id or _next_node_id(adjacency, node.id)
                wait_until = parse_iso(result.wait_until)
                if not runs_db.set_waiting(state.run_id, wait_until, next_node_id, context):
                    raise _RunInterrupted()

                run_logger.info("Run waiting until %s (resume at %s)", isoformat(wait_until), next_node_id)
                _publish_run(
                    bus,
                    state,
                    workflow,
                    WorkflowSubjects.RUN_WAITING,
                    RunStatus.WAITING.value,
                    nextExecutionAt=isoformat(wait_until),
                    currentNodeId=next_node_id,
                )
                return RunResult(
                    run_id=state.run_id,
                    status=RunStatus.WAITING.value,
                    completed_nodes=completed_nodes,
                    failed_nodes=failed_nodes,
                )

            if result.next_node_id:
                current_node_id = result.next_node_id
            elif node.type == NodeType.END.value:
                current_node_id = None
                break
            elif node.type == NodeType.CONDITION.value:
                # No branch and no default edge: the run stops here
                current_node_id = None
            else:
                current_node_id = _next_node_id(adjacency, node.id)

            if current_node_id and not runs_db.save_progress(state.run_id, current_node_id, context):
                raise _RunInterrupted()

        # END reached, or the walk ran out of nodes
        if not runs_db.mark_completed(state.run_id, context):
            raise _RunInterrupted()
        workflows_db.increment_stats(state.workflow_id, "successful_runs")

        run_logger.info("Run completed (%d nodes)", completed_nodes)
        _publish_run(bus, state, workflow, WorkflowSubjects.RUN_COMPLETED, RunStatus.COMPLETED.value)
        return RunResult(
            run_id=state.run_id,
            status=RunStatus.COMPLETED.value,
            completed_nodes=completed_nodes,
            failed_nodes=failed_nodes,
        )

    except _RunInterrupted:
        status = _current_status(state.run_id)
        run_logger.warning("Run is no longer running (status: %s); stopping", status)
        return RunResult(
            run_id=state.run_id,
            status=status,
            completed_nodes=completed_nodes,
            failed_nodes=failed_nodes,
            error=f"Run was {status} during execution",
        )


def _next_node_id(adjacency: Dict[str, List[str]], node_id: str) -> Optional[str]:
    targets = adjacency.get(node_id)
    return targets[0] if targets else None


def _record_error(context: Dict[str, Any], node: GraphNode, error: str) -> Dict[str, Any]:
    errors = list(context.get("errors") or [])
    errors.append({"nodeId": node.id, "nodeType": node.type, "error": error, "timestamp": isoformat(utcnow())})
    return {**context, "errors": errors}


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _load_run(run_id: str, tenant_id: str) -> WorkflowRun:
    run = runs_db.get_run(run_id, tenant_id)
    if run is None:
        raise LookupError(f"Run not found: {run_id}")
    return run


def _load_workflow(run: WorkflowRun) -> Workflow:
    workflow = workflows_db.get_workflow(cast(str, run.workflow_id), cast(str, run.tenant_id))
    if workflow is None:
        raise LookupError(f"Workflow not found: {run.workflow_id}")
    return workflow


def _current_status(run_id: str) -> str:
    run = runs_db.get_run(run_id)
    return cast(str, run.status) if run else "unknown"


def _fail_safely(
    run_id: str,
    error: str,
    from_statuses: tuple,
    bus: EventBus,
    run_logger: RunLoggerAdapter,
) -> RunResult:
    """Best-effort persistence of a failure that escaped the graph walk."""
    status = RunStatus.FAILED.value
    try:
        if runs_db.mark_failed(run_id, error, from_statuses=from_statuses):
            run = runs_db.get_run(run_id)
            if run is not None:
                workflows_db.increment_stats(cast(str, run.workflow_id), "failed_runs")
                workflow = workflows_db.get_workflow(cast(str, run.workflow_id), include_deleted=True)
                publish_quietly(
                    WorkflowSubjects.RUN_FAILED,
                    run_event(
                        tenant_id=cast(str, run.tenant_id),
                        workflow_id=cast(str, run.workflow_id),
                        workflow_name=cast(str, workflow.name) if workflow else "Unknown",
                        run_id=run_id,
                        status=status,
                        contact_id=run.contact_id,
                        error_message=error,
                        correlation_id=run.correlation_id,
                    ),
                    run.correlation_id,
                    bus=bus,
                )
    except Exception as e:
        run_logger.error("Could not record failure of run %s: %s", run_id, e)

    return RunResult(run_id=run_id, status=status, error=error)


def _publish_run(
    bus: EventBus,
    state: RunState,
    workflow: Workflow,
    subject: str,
    status: str,
    error: Optional[str] = None,
    **extra: Any,
) -> None:
    publish_quietly(
        subject,
        run_event(
            tenant_id=state.tenant_id,
            workflow_id=state.workflow_id,
            workflow_name=cast(str, workflow.name),
            run_id=state.run_id,
            status=status,
            contact_id=state.contact_id,
            error_message=error,
            correlation_id=state.correlation_id,
            **extra,
        ),
        state.correlation_id,
        bus=bus,
    )


def _publish_node(
    bus: EventBus,
    state: RunState,
    node: GraphNode,
    status: str,
    output: Optional[Dict[str, Any]],
    error: Optional[str],
    duration_ms: int,
) -> None:
    subject = WorkflowSubjects.NODE_FAILED if status == NodeRunStatus.FAILED.value else WorkflowSubjects.NODE_COMPLETED
    publish_quietly(
        subject,
        node_event(
            tenant_id=state.tenant_id,
            workflow_id=state.workflow_id,
            run_id=state.run_id,
            node_id=node.id,
            node_type=node.type,
            status=status,
            output=output,
            error_message=error,
            duration_ms=duration_ms,
            correlation_id=state.correlation_id,
        ),
        state.correlation_id,
        bus=bus,
    )


# ----------------------------------------------------------------------
# Inspection and control
# ----------------------------------------------------------------------
def get_run(run_id: str, tenant_id: str) -> WorkflowRun | None:
    """Get a run by ID."""
    return runs_db.get_run(run_id, tenant_id)


def get_run_with_node_runs(run_id: str, tenant_id: str) -> tuple[WorkflowRun, list[WorkflowNodeRun]] | None:
    """A run together with its node-run audit trail."""
    run = runs_db.get_run(run_id, tenant_id)
    if run is None:
        return None
    return run, node_runs_db.list_node_runs(run_id, tenant_id)


def list_runs(
    tenant_id: str,
    workflow_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[WorkflowRun], int]:
    """
    List runs with filtering.

    Returns:
        (runs, total_count)
    """
    return runs_db.list_runs(tenant_id, workflow_id=workflow_id, status=status, limit=limit, offset=offset)


def cancel_run(run_id: str, tenant_id: str, event_bus: Optional[EventBus] = None) -> bool:
    """Cancel a pending, running or waiting run. False if it was missing or already finished."""
    if not runs_db.cancel_run(run_id, tenant_id):
        return False

    run = runs_db.get_run(run_id, tenant_id)
    if run is not None:
        workflow = workflows_db.get_workflow(cast(str, run.workflow_id), tenant_id, include_deleted=True)
        publish_quietly(
            WorkflowSubjects.RUN_CANCELLED,
            run_event(
                tenant_id=tenant_id,
                workflow_id=cast(str, run.workflow_id),
                workflow_name=cast(str, workflow.name) if workflow else "Unknown",
                run_id=run_id,
                status=RunStatus.CANCELLED.value,
                contact_id=run.contact_id,
                correlation_id=run.correlation_id,
            ),
            run.correlation_id,
            bus=event_bus,
        )
    return True


def get_execution_stats(run_id: str) -> Dict[str, Any]:
    """Node-level statistics for a run."""
    return node_runs_db.get_execution_stats(run_id)
