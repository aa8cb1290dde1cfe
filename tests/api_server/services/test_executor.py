# tests/api_server/services/test_executor.py
import logging
from datetime import timedelta
from unittest.mock import patch

import pytest

from api_server.db import node_runs as node_runs_db
from api_server.db import runs as runs_db
from api_server.db import workflows as workflows_db
from api_server.services import executor
from automation.events import WorkflowSubjects
from automation.timeutils import as_utc, utcnow
from tests.fixtures.graphs import (
    CONTACT,
    TENANT,
    branching_graph,
    chain,
    delay_graph,
    edge,
    node,
    send_message,
    simple_graph,
    stored_workflow,
)


def _pending_run(workflow, contact_id=CONTACT, context=None):
    return runs_db.create_run(TENANT, workflow.id, contact_id, context or {}, "start", correlation_id="corr-1")


class TestExecuteRun:
    """Test execute_run() on complete graphs."""

    def test_simple_workflow_completes(self, db, event_bus):
        """START → SEND_MESSAGE → END completes with two audited nodes."""
        workflow = stored_workflow(simple_graph())
        run = _pending_run(workflow)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert result.completed_nodes == 2
        assert result.failed_nodes == 0
        assert result.error is None

        assert len(event_bus.of(WorkflowSubjects.SEND_MESSAGE)) == 1
        assert len(event_bus.of(WorkflowSubjects.RUN_STARTED)) == 1
        assert len(event_bus.of(WorkflowSubjects.RUN_COMPLETED)) == 1
        assert len(event_bus.of(WorkflowSubjects.NODE_COMPLETED)) == 2

        stored = runs_db.get_run(run.id)
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert stored.current_node_id is None
        assert stored.context["lastNodeId"] == "end"
        assert stored.context["lastNodeResult"] == {"ended": True}

        assert workflows_db.get_workflow(workflow.id).successful_runs == 1

    def test_start_has_no_audit_record(self, db):
        workflow = stored_workflow(simple_graph())
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        node_runs = node_runs_db.list_node_runs(run.id)
        assert [(n.node_id, n.status) for n in node_runs] == [("msg", "completed"), ("end", "completed")]
        assert node_runs[0].input == {"channel": "sms", "templateId": "tpl-1"}
        assert node_runs[0].result["output"]["status"] == "queued"
        assert node_runs[0].duration_ms is not None

    def test_graph_without_end_still_completes(self, db):
        workflow = stored_workflow(chain(node("start", "start"), send_message()))
        run = _pending_run(workflow)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert result.completed_nodes == 1

    def test_node_failure_is_terminal(self, db, event_bus):
        """SEND_MESSAGE without a contact fails the run and stops the walk."""
        graph = chain(node("start", "start"), send_message("msg1"), send_message("msg2"), node("end", "end"))
        workflow = stored_workflow(graph)
        run = _pending_run(workflow, contact_id=None)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "failed"
        assert result.failed_nodes == 1
        assert result.completed_nodes == 0
        assert result.error == "No contact ID available for sending message"

        node_runs = node_runs_db.list_node_runs(run.id)
        assert [(n.node_id, n.status) for n in node_runs] == [("msg1", "failed")]
        assert node_runs[0].error_message == result.error

        stored = runs_db.get_run(run.id)
        assert stored.status == "failed"
        assert stored.error_message
        assert stored.current_node_id == "start"
        assert stored.context["errors"][0]["nodeId"] == "msg1"

        assert workflows_db.get_workflow(workflow.id).failed_runs == 1
        assert len(event_bus.of(WorkflowSubjects.NODE_FAILED)) == 1
        assert len(event_bus.of(WorkflowSubjects.RUN_FAILED)) == 1
        assert event_bus.of(WorkflowSubjects.SEND_MESSAGE) == []

    def test_only_pending_runs_execute(self, db):
        workflow = stored_workflow()
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert "not in PENDING status" in result.error
        assert len(node_runs_db.list_node_runs(run.id)) == 2

    def test_missing_run(self, db):
        result = executor.execute_run("missing", TENANT)
        assert result.status == "failed"
        assert "Run not found" in result.error

    def test_missing_start_node(self, db):
        workflow = stored_workflow(chain(send_message("a"), node("end", "end")))
        run = _pending_run(workflow)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "failed"
        assert result.error == "No start node found in workflow graph"
        assert runs_db.get_run(run.id).status == "failed"
        assert workflows_db.get_workflow(workflow.id).failed_runs == 1

    def test_unresolved_next_node(self, db):
        graph = simple_graph()
        graph["edges"][1] = edge("msg", "ghost")
        workflow = stored_workflow(graph)
        run = _pending_run(workflow)

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "failed"
        assert result.error == "Node not found: ghost"

    def test_progress_event_failure_does_not_fail_run(self, db, event_bus):
        workflow = stored_workflow()
        run = _pending_run(workflow)

        with patch("api_server.services.executor.publish_quietly") as mock_publish:
            result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert mock_publish.called

    def test_persistence_failure_propagates_to_failed_result(self, db):
        workflow = stored_workflow()
        run = _pending_run(workflow)

        with patch("api_server.services.executor.node_runs_db.start_execution", side_effect=RuntimeError("disk full")):
            result = executor.execute_run(run.id, TENANT)

        assert result.status == "failed"
        assert result.error == "disk full"
        assert runs_db.get_run(run.id).status == "failed"
        assert workflows_db.get_workflow(workflow.id).failed_runs == 1

    def test_cancel_during_execution_is_observed(self, db):
        """A run cancelled while a node executes is not completed afterwards."""
        workflow = stored_workflow()
        run = _pending_run(workflow)
        real_execute = executor.execute_node

        def cancel_then_execute(*args, **kwargs):
            runs_db.cancel_run(run.id, TENANT)
            return real_execute(*args, **kwargs)

        with patch("api_server.services.executor.execute_node", side_effect=cancel_then_execute):
            result = executor.execute_run(run.id, TENANT)

        assert result.status == "cancelled"
        assert runs_db.get_run(run.id).status == "cancelled"
        assert workflows_db.get_workflow(workflow.id).successful_runs == 0


class TestConditionRouting:
    """CONDITION node branching through the executor."""

    RULES = [{"field": "variables.score", "operator": "greater_than", "value": 50, "nextNodeId": "vip"}]

    def _sent_templates(self, event_bus):
        return [e.payload["templateId"] for e in event_bus.of(WorkflowSubjects.SEND_MESSAGE)]

    def test_matching_branch(self, db, event_bus):
        workflow = stored_workflow(branching_graph(self.RULES))
        run = _pending_run(workflow, context={"variables": {"score": 80}})

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert self._sent_templates(event_bus) == ["tpl-vip"]

    def test_unlabeled_edge_fallback(self, db, event_bus):
        graph = branching_graph(self.RULES)
        graph["edges"][2].pop("sourceHandle")
        workflow = stored_workflow(graph)
        run = _pending_run(workflow, context={"variables": {"score": 10}})

        executor.execute_run(run.id, TENANT)

        assert self._sent_templates(event_bus) == ["tpl-regular"]

    def test_no_route_ends_run(self, db, event_bus):
        workflow = stored_workflow(branching_graph(self.RULES))
        run = _pending_run(workflow, context={"variables": {"score": 10}})

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "completed"
        assert result.completed_nodes == 1
        assert self._sent_templates(event_bus) == []


class TestDelayAndResume:
    """DELAY suspends the run; resume_run continues from the cursor."""

    def test_delay_suspends_run(self, db, event_bus):
        workflow = stored_workflow(delay_graph())
        run = _pending_run(workflow)
        started = utcnow()

        result = executor.execute_run(run.id, TENANT)

        assert result.status == "waiting"
        assert result.completed_nodes == 2

        stored = runs_db.get_run(run.id)
        assert stored.status == "waiting"
        assert stored.current_node_id == "msg2"
        expected = started + timedelta(hours=1)
        assert abs((as_utc(stored.next_execution_at) - expected).total_seconds()) < 1

        [waiting] = event_bus.of(WorkflowSubjects.RUN_WAITING)
        assert waiting.payload["currentNodeId"] == "msg2"
        assert len(event_bus.of(WorkflowSubjects.SEND_MESSAGE)) == 1

    def test_waiting_run_not_due_before_wakeup(self, db):
        workflow = stored_workflow(delay_graph())
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        assert runs_db.find_due_runs() == []
        assert [r.id for r in runs_db.find_due_runs(now=utcnow() + timedelta(hours=1, seconds=1))] == [run.id]

    def test_resume_continues_from_cursor(self, db, event_bus):
        workflow = stored_workflow(delay_graph())
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        result = executor.resume_run(run.id, TENANT)

        assert result.status == "completed"
        assert result.completed_nodes == 2
        templates = [e.payload["templateId"] for e in event_bus.of(WorkflowSubjects.SEND_MESSAGE)]
        assert templates == ["tpl-1", "tpl-2"]
        assert [n.node_id for n in node_runs_db.list_node_runs(run.id)] == ["msg1", "wait", "msg2", "end"]
        assert workflows_db.get_workflow(workflow.id).successful_runs == 1

    def test_resume_requires_waiting(self, db):
        workflow = stored_workflow()
        run = _pending_run(workflow)

        result = executor.resume_run(run.id, TENANT)

        assert result.status == "pending"
        assert "not in WAITING status" in result.error

    def test_resume_cancelled_run_is_noop(self, db):
        workflow = stored_workflow(delay_graph())
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)
        runs_db.cancel_run(run.id, TENANT)

        result = executor.resume_run(run.id, TENANT)

        assert result.status == "cancelled"
        assert runs_db.get_run(run.id).status == "cancelled"

    def test_lost_claim_race(self, db):
        workflow = stored_workflow(delay_graph())
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        with patch("api_server.services.executor.runs_db.claim_run", return_value=False):
            result = executor.resume_run(run.id, TENANT)

        assert "claimed by another worker" in result.error
        assert runs_db.get_run(run.id).status == "waiting"

    def test_delay_as_last_node_completes_on_resume(self, db):
        workflow = stored_workflow(chain(node("start", "start"), node("wait", "delay", duration=5, unit="minutes")))
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)
        assert runs_db.get_run(run.id).current_node_id is None

        assert executor.resume_run(run.id, TENANT).status == "completed"


class TestInspection:
    def test_get_run_with_node_runs(self, db):
        workflow = stored_workflow()
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        found, node_runs = executor.get_run_with_node_runs(run.id, TENANT)
        assert found.id == run.id
        assert len(node_runs) == 2
        assert executor.get_run_with_node_runs(run.id, "other-tenant") is None

    def test_cancel_run_emits_event(self, db, event_bus):
        workflow = stored_workflow()
        run = _pending_run(workflow)

        assert executor.cancel_run(run.id, TENANT)
        [event] = event_bus.of(WorkflowSubjects.RUN_CANCELLED)
        assert event.payload["runId"] == run.id
        assert event.payload["status"] == "cancelled"

        assert not executor.cancel_run(run.id, TENANT)

    def test_execution_stats(self, db):
        workflow = stored_workflow()
        run = _pending_run(workflow)
        executor.execute_run(run.id, TENANT)

        stats = executor.get_execution_stats(run.id)
        assert stats["total"] == 2
        assert stats["completed"] == 2
        assert stats["failed"] == 0

    def test_list_runs(self, db):
        workflow = stored_workflow()
        _pending_run(workflow)
        _pending_run(workflow, contact_id="c2")

        runs, total = executor.list_runs(TENANT, workflow_id=workflow.id)
        assert total == 2
        assert len(runs) == 2


class TestRunLoggerAdapter:
    def test_prefix(self):
        adapter = executor.RunLoggerAdapter(logging.getLogger("test"), {"run_id": "1234567890", "workflow_id": "abcdefghij"})
        msg, _ = adapter.process("hello", {})
        assert msg == "[run_id=12345678] [workflow=abcdefgh] hello"

    @pytest.mark.parametrize("extra", [{}, {"run_id": "r"}])
    def test_defaults(self, extra):
        msg, _ = executor.RunLoggerAdapter(logging.getLogger("test"), extra).process("x", {})
        assert "x" in msg
