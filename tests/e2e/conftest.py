# tests/e2e/conftest.py
"""E2E test configuration and fixtures."""

import os
import time
import uuid
from typing import Generator

import pytest
import requests


class APIClient:
    """API client wrapper for E2E tests."""

    def __init__(self, base_url: str, api_key: str | None = None, tenant_id: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})
        if tenant_id:
            self.session.headers.update({"X-Tenant-ID": tenant_id})

    def get(self, path: str, **kwargs):
        """GET request."""
        return self.session.get(f"{self.base_url}{path}", **kwargs)

    def post(self, path: str, **kwargs):
        """POST request."""
        return self.session.post(f"{self.base_url}{path}", **kwargs)

    def patch(self, path: str, **kwargs):
        """PATCH request."""
        return self.session.patch(f"{self.base_url}{path}", **kwargs)

    def delete(self, path: str, **kwargs):
        """DELETE request."""
        return self.session.delete(f"{self.base_url}{path}", **kwargs)


@pytest.fixture(scope="session")
def api_base_url() -> str:
    """Get API base URL from environment or default."""
    return os.getenv("API_BASE_URL", "http://localhost:8000")


@pytest.fixture(scope="session")
def api_key() -> str | None:
    """Get API key from environment."""
    return os.getenv("API_KEY")


@pytest.fixture(scope="session")
def test_tenant() -> str:
    """Tenant to run against; a throwaway one unless E2E_TENANT_ID is set."""
    return os.getenv("E2E_TENANT_ID") or f"e2e-{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="session")
def api_client(api_base_url: str, api_key: str | None, test_tenant: str) -> APIClient:
    """Create API client with authentication and tenant scope."""
    return APIClient(api_base_url, api_key, test_tenant)


@pytest.fixture
def workflow_factory(api_client: APIClient) -> Generator:
    """Create workflows through the API and delete them after the test."""
    created: list[str] = []

    def create(graph: dict, trigger_type: str = "incoming_message", trigger_config: dict | None = None) -> dict:
        body = {
            "name": f"e2e-{uuid.uuid4().hex[:8]}",
            "trigger_type": trigger_type,
            "trigger_config": trigger_config,
            "graph": graph,
        }
        response = api_client.post("/api/v1/workflows", json=body)
        response.raise_for_status()
        workflow = response.json()
        created.append(workflow["id"])
        return workflow

    yield create

    for workflow_id in created:
        api_client.delete(f"/api/v1/workflows/{workflow_id}")


def poll_run_status(
    api_client: APIClient,
    workflow_id: str,
    run_id: str,
    timeout: int = 60,
    poll_interval: int = 1,
    until: frozenset = frozenset({"completed", "failed", "cancelled"}),
) -> dict:
    """
    Poll run status until it reaches one of ``until``.

    Args:
        api_client: API client session
        workflow_id: Workflow the run belongs to
        run_id: Run ID to poll
        timeout: Maximum time to wait in seconds (default: 60)
        poll_interval: Time between polls in seconds (default: 1)
        until: Statuses that end the polling

    Returns:
        Final run response dict

    Raises:
        TimeoutError: If run doesn't reach one of the statuses within timeout
    """
    start_time = time.time()

    while True:
        elapsed = time.time() - start_time
        if elapsed > timeout:
            raise TimeoutError(f"Run {run_id} did not reach {sorted(until)} within {timeout}s")

        response = api_client.get(f"/api/v1/workflows/{workflow_id}/runs/{run_id}")
        response.raise_for_status()
        run_data = response.json()

        if run_data.get("status") in until:
            return run_data

        time.sleep(poll_interval)


@pytest.fixture
def poll_run(api_client: APIClient) -> Generator:
    """Fixture that provides poll_run_status function."""
    yield lambda workflow_id, run_id, **kwargs: poll_run_status(api_client, workflow_id, run_id, **kwargs)
