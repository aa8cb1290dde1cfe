# tests/api_server/services/test_workflows_service.py
import pytest

from api_server.db import workflows as workflows_db
from api_server.services import workflows as service
from api_server.services.workflows import (
    WorkflowConflictError,
    WorkflowNotFoundError,
    WorkflowStateError,
    WorkflowValidationError,
)
from automation.events import WorkflowSubjects
from automation.timeutils import as_utc, utcnow
from tests.fixtures.graphs import OTHER_TENANT, TENANT, chain, node, simple_graph

CRON = {"cronExpression": "0 9 * * *"}


def _create(name="Welcome", trigger_type="incoming_message", graph=None, **kwargs):
    return service.create_workflow(TENANT, name, trigger_type, graph or simple_graph(), **kwargs)


class TestCreateWorkflow:
    """Test create_workflow()."""

    def test_creates_draft(self, db, event_bus):
        workflow = _create(description="Greets new contacts", user_id="user-1", correlation_id="corr-1")

        assert not workflow.is_published
        assert workflow.created_by == "user-1"
        assert workflow.total_runs == 0

        [created] = event_bus.of(WorkflowSubjects.WORKFLOW_CREATED)
        assert created.payload["workflowId"] == workflow.id
        assert created.payload["userId"] == "user-1"
        assert created.correlation_id == "corr-1"

    def test_duplicate_name(self, db):
        _create()
        with pytest.raises(WorkflowConflictError, match='"Welcome" already exists'):
            _create()

    def test_same_name_in_other_tenant(self, db):
        _create()
        other = service.create_workflow(OTHER_TENANT, "Welcome", "incoming_message", simple_graph())
        assert other.tenant_id == OTHER_TENANT

    def test_name_reusable_after_delete(self, db):
        workflow = _create()
        service.delete_workflow(workflow.id, TENANT)
        assert _create().id != workflow.id

    def test_invalid_graph(self, db):
        graph = chain(node("msg", "send_message", channel="sms", templateId="t"), node("end", "end"))
        with pytest.raises(WorkflowValidationError) as exc_info:
            _create(graph=graph)
        assert "NO_START_NODE" in [issue.code for issue in exc_info.value.issues]

    def test_malformed_node_data(self, db):
        graph = simple_graph()
        graph["nodes"][1]["data"] = ["sms", "tpl-1"]
        with pytest.raises(WorkflowValidationError) as exc_info:
            _create(graph=graph)
        assert "INVALID_NODE" in [issue.code for issue in exc_info.value.issues]

    def test_invalid_trigger_type(self, db):
        with pytest.raises(WorkflowValidationError) as exc_info:
            _create(trigger_type="webhook")
        assert exc_info.value.issues[0].code == "INVALID_TRIGGER_TYPE"

    def test_invalid_trigger_config(self, db):
        with pytest.raises(WorkflowValidationError) as exc_info:
            _create(trigger_config={"matchType": "fuzzy"})
        assert exc_info.value.issues[0].code == "INVALID_TRIGGER_CONFIG"
        assert exc_info.value.issues[0].field.startswith("triggerConfig.")


class TestGetAndList:
    def test_get_other_tenant(self, db):
        workflow = _create()
        with pytest.raises(WorkflowNotFoundError, match=workflow.id):
            service.get_workflow(workflow.id, OTHER_TENANT)

    def test_list(self, db):
        _create("One")
        _create("Two", trigger_type="event_based")
        workflows, total = service.list_workflows(TENANT, trigger_type="event_based")
        assert total == 1
        assert workflows[0].name == "Two"


class TestUpdateWorkflow:
    """Test update_workflow()."""

    def test_partial_update(self, db, event_bus):
        workflow = _create(description="old")
        updated = service.update_workflow(workflow.id, TENANT, name="Renamed", user_id="user-2")

        assert updated.name == "Renamed"
        assert updated.description == "old"
        assert updated.updated_by == "user-2"
        assert len(event_bus.of(WorkflowSubjects.WORKFLOW_UPDATED)) == 1

    def test_rename_conflict(self, db):
        _create("Taken")
        workflow = _create("Mine")
        with pytest.raises(WorkflowConflictError):
            service.update_workflow(workflow.id, TENANT, name="Taken")

    def test_graph_frozen_when_published(self, db):
        workflow = _create()
        service.publish_workflow(workflow.id, TENANT)
        with pytest.raises(WorkflowStateError, match="Unpublish first"):
            service.update_workflow(workflow.id, TENANT, graph=simple_graph())

    def test_published_workflow_can_be_renamed(self, db):
        workflow = _create()
        service.publish_workflow(workflow.id, TENANT)
        assert service.update_workflow(workflow.id, TENANT, name="Live").name == "Live"

    def test_invalid_graph_rejected(self, db):
        workflow = _create()
        with pytest.raises(WorkflowValidationError):
            service.update_workflow(workflow.id, TENANT, graph={"nodes": [], "edges": []})

    def test_published_schedule_follows_trigger_change(self, db):
        workflow = _create(trigger_type="time_based", trigger_config=CRON)
        service.publish_workflow(workflow.id, TENANT)

        updated = service.update_workflow(workflow.id, TENANT, trigger_config={"cronExpression": "30 * * * *"})
        assert as_utc(updated.next_trigger_at).minute == 30

        updated = service.update_workflow(workflow.id, TENANT, trigger_type="incoming_message")
        assert updated.next_trigger_at is None

    def test_missing_workflow(self, db):
        with pytest.raises(WorkflowNotFoundError):
            service.update_workflow("missing", TENANT, name="x")


class TestDeleteWorkflow:
    def test_soft_delete(self, db, event_bus):
        workflow = _create()
        service.delete_workflow(workflow.id, TENANT, user_id="user-1")

        with pytest.raises(WorkflowNotFoundError):
            service.get_workflow(workflow.id, TENANT)
        assert workflows_db.get_workflow(workflow.id, include_deleted=True).is_deleted
        assert len(event_bus.of(WorkflowSubjects.WORKFLOW_DELETED)) == 1

    def test_delete_twice(self, db):
        workflow = _create()
        service.delete_workflow(workflow.id, TENANT)
        with pytest.raises(WorkflowNotFoundError):
            service.delete_workflow(workflow.id, TENANT)


class TestPublishWorkflow:
    """Test publish_workflow() and unpublish_workflow()."""

    def test_publish(self, db, event_bus):
        workflow = _create()
        published = service.publish_workflow(workflow.id, TENANT, user_id="user-1")

        assert published.is_published
        assert published.published_by == "user-1"
        assert published.published_at is not None
        assert published.next_trigger_at is None
        assert len(event_bus.of(WorkflowSubjects.WORKFLOW_PUBLISHED)) == 1

    def test_publish_twice(self, db):
        workflow = _create()
        service.publish_workflow(workflow.id, TENANT)
        with pytest.raises(WorkflowStateError, match="already published"):
            service.publish_workflow(workflow.id, TENANT)

    def test_publish_revalidates_stored_graph(self, db):
        workflow = _create()
        workflows_db.update_workflow(workflow.id, TENANT, graph={"nodes": [], "edges": []})
        with pytest.raises(WorkflowValidationError, match="invalid graph"):
            service.publish_workflow(workflow.id, TENANT)
        assert not service.get_workflow(workflow.id, TENANT).is_published

    def test_time_based_gets_first_trigger(self, db):
        workflow = _create(trigger_type="time_based", trigger_config=CRON)
        published = service.publish_workflow(workflow.id, TENANT)

        upcoming = as_utc(published.next_trigger_at)
        assert upcoming > utcnow()
        assert (upcoming.hour, upcoming.minute) == (9, 0)

    def test_time_based_without_cron(self, db):
        workflow = _create(trigger_type="time_based")
        with pytest.raises(WorkflowValidationError) as exc_info:
            service.publish_workflow(workflow.id, TENANT)
        assert exc_info.value.issues[0].code == "MISSING_SCHEDULE"

    def test_time_based_with_bad_cron(self, db):
        workflow = _create(trigger_type="time_based", trigger_config={"cronExpression": "often"})
        with pytest.raises(WorkflowValidationError) as exc_info:
            service.publish_workflow(workflow.id, TENANT)
        assert exc_info.value.issues[0].code == "INVALID_SCHEDULE"

    def test_unpublish(self, db, event_bus):
        workflow = _create(trigger_type="time_based", trigger_config=CRON)
        service.publish_workflow(workflow.id, TENANT)

        unpublished = service.unpublish_workflow(workflow.id, TENANT)
        assert not unpublished.is_published
        assert unpublished.next_trigger_at is None
        assert len(event_bus.of(WorkflowSubjects.WORKFLOW_UNPUBLISHED)) == 1

    def test_unpublish_draft(self, db):
        workflow = _create()
        with pytest.raises(WorkflowStateError, match="not published"):
            service.unpublish_workflow(workflow.id, TENANT)


class TestValidateWorkflowGraph:
    def test_valid(self):
        result = service.validate_workflow_graph(simple_graph())
        assert result.is_valid
        assert result.errors == []

    def test_invalid_does_not_raise(self):
        result = service.validate_workflow_graph(None)
        assert not result.is_valid
