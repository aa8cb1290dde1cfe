# tests/e2e/test_workflow_lifecycle.py
"""E2E tests against a running API server: create, publish, trigger, inspect."""
import pytest

from tests.e2e.conftest import APIClient
from tests.fixtures.graphs import delay_graph, simple_graph


@pytest.mark.e2e
def test_server_is_up(api_client: APIClient):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.e2e
def test_manual_trigger_runs_to_completion(api_client: APIClient, workflow_factory, poll_run):
    """A published workflow triggered for a contact completes and records its node runs."""
    workflow = workflow_factory(simple_graph())

    response = api_client.post(f"/api/v1/workflows/{workflow['id']}/publish")
    assert response.status_code == 200, response.text

    response = api_client.post(
        f"/api/v1/workflows/{workflow['id']}/trigger",
        json={"contact_id": "e2e-contact", "context": {"source": "e2e"}},
    )
    assert response.status_code == 200, response.text
    result = response.json()
    assert result["triggered"] is True

    run = poll_run(workflow["id"], result["run_id"])
    assert run["status"] == "completed"
    assert [n["node_id"] for n in run["node_runs"]] == ["msg", "end"]


@pytest.mark.e2e
def test_unpublished_workflow_cannot_be_triggered(api_client: APIClient, workflow_factory):
    workflow = workflow_factory(simple_graph())

    response = api_client.post(f"/api/v1/workflows/{workflow['id']}/trigger", json={"contact_id": "e2e-contact"})
    assert response.status_code == 400


@pytest.mark.e2e
def test_delayed_run_waits_and_can_be_cancelled(api_client: APIClient, workflow_factory, poll_run):
    """A one-hour delay parks the run; cancelling it ends the run."""
    workflow = workflow_factory(delay_graph())
    api_client.post(f"/api/v1/workflows/{workflow['id']}/publish").raise_for_status()

    result = api_client.post(
        f"/api/v1/workflows/{workflow['id']}/trigger",
        json={"contact_id": "e2e-contact"},
    ).json()

    run = poll_run(workflow["id"], result["run_id"], until=frozenset({"waiting"}))
    assert run["current_node_id"] == "msg2"
    assert run["next_execution_at"] is not None

    response = api_client.post(f"/api/v1/workflows/{workflow['id']}/runs/{result['run_id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


@pytest.mark.e2e
def test_incoming_message_starts_matching_workflow(api_client: APIClient, workflow_factory):
    workflow = workflow_factory(simple_graph(), trigger_config={"keywords": ["e2e-keyword"]})
    api_client.post(f"/api/v1/workflows/{workflow['id']}/publish").raise_for_status()

    response = api_client.post(
        "/api/v1/triggers/messages",
        json={"contact_id": "e2e-contact", "channel": "sms", "content": "this has the e2e-keyword"},
    )
    assert response.status_code == 200
    assert workflow["id"] in [r["workflow_id"] for r in response.json()["results"]]
