# tests/automation/test_events.py
import json
from unittest.mock import MagicMock, patch

import pytest

from automation.events import (
    InMemoryEventBus,
    LoggingEventBus,
    RedisEventBus,
    WorkflowSubjects,
    create_event_bus,
    get_event_bus,
    publish_quietly,
    run_event,
    set_event_bus,
    update_attribute_event,
)


class TestEventBusSelection:
    def test_create_memory_and_log(self):
        assert isinstance(create_event_bus("memory"), InMemoryEventBus)
        assert isinstance(create_event_bus("LOG"), LoggingEventBus)

    def test_unsupported_backend(self):
        with pytest.raises(ValueError, match="Unsupported event bus backend"):
            create_event_bus("kafka")

    @patch("automation.events.redis.Redis.from_url")
    def test_create_redis(self, mock_from_url):
        bus = create_event_bus("redis")
        assert isinstance(bus, RedisEventBus)
        mock_from_url.assert_called_once()

    def test_set_event_bus_overrides(self, event_bus):
        assert get_event_bus() is event_bus
        other = InMemoryEventBus()
        set_event_bus(other)
        assert get_event_bus() is other


class TestRedisEventBus:
    @patch("automation.events.redis.Redis.from_url")
    def test_publish_envelope(self, mock_from_url):
        client = MagicMock()
        mock_from_url.return_value = client

        bus = RedisEventBus("redis://localhost:6379/0", prefix="acme")
        bus.publish(WorkflowSubjects.RUN_COMPLETED, {"runId": "r1"}, "corr-1")

        channel, message = client.publish.call_args[0]
        assert channel == "acme.workflow.run.completed"
        assert json.loads(message) == {
            "subject": "workflow.run.completed",
            "correlationId": "corr-1",
            "data": {"runId": "r1"},
        }


class TestPublishQuietly:
    def test_swallows_transport_errors(self):
        bus = MagicMock()
        bus.publish.side_effect = ConnectionError("down")
        publish_quietly(WorkflowSubjects.RUN_STARTED, {}, bus=bus)
        bus.publish.assert_called_once()

    def test_uses_process_bus(self, event_bus):
        publish_quietly(WorkflowSubjects.RUN_STARTED, {"a": 1}, "corr")
        assert event_bus.events[0].subject == WorkflowSubjects.RUN_STARTED
        assert event_bus.events[0].correlation_id == "corr"


class TestPayloads:
    def test_run_event_drops_none_fields(self):
        payload = run_event("t1", "wf", "Welcome", "run", "completed")
        assert payload["tenantId"] == "t1"
        assert payload["workflowName"] == "Welcome"
        assert "contactId" not in payload
        assert "errorMessage" not in payload
        assert payload["eventId"]
        assert payload["timestamp"]

    def test_run_event_extra_fields(self):
        payload = run_event("t1", "wf", "Welcome", "run", "waiting", nextExecutionAt="2024-01-01T00:00:00.000Z")
        assert payload["nextExecutionAt"] == "2024-01-01T00:00:00.000Z"

    def test_update_attribute_keeps_null_value(self):
        payload = update_attribute_event("t1", "wf", "run", "c1", "nickname", None, "set")
        assert payload["attributeValue"] is None
