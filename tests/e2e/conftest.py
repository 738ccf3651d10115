# tests/e2e/conftest.py
"""E2E test configuration and fixtures."""

import os

import pytest
import requests


class APIClient:
    """API client wrapper for E2E tests."""

    def __init__(self, base_url: str, api_key: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})

    def get(self, path: str, **kwargs):
        """GET request."""
        return self.session.get(f"{self.base_url}{path}", **kwargs)

    def post(self, path: str, **kwargs):
        """POST request."""
        return self.session.post(f"{self.base_url}{path}", **kwargs)

    def patch(self, path: str, **kwargs):
        """PATCH request."""
        return self.session.patch(f"{self.base_url}{path}", **kwargs)


@pytest.fixture(scope="session")
def api_base_url() -> str:
    """Get API base URL from environment or default."""
    return os.getenv("API_BASE_URL", "http://localhost:8000")


@pytest.fixture(scope="session")
def api_key() -> str | None:
    """Get API key from environment."""
    return os.getenv("API_KEY")


@pytest.fixture(scope="session")
def api_client(api_base_url: str, api_key: str | None) -> APIClient:
    """API client pointed at a running trigger server; skips when it is unreachable."""
    client = APIClient(api_base_url, api_key)
    try:
        client.get("/health", timeout=5)
    except requests.ConnectionError:
        pytest.skip(f"Trigger server not reachable at {api_base_url}")
    return client


@pytest.fixture(scope="session")
def e2e_table_id() -> str:
    """Table with a DATE field to configure streams against."""
    table_id = os.getenv("E2E_TABLE_ID")
    if not table_id:
        pytest.skip("E2E_TABLE_ID environment variable not set")
    return table_id


@pytest.fixture(scope="session")
def e2e_date_field_id() -> int:
    field_id = os.getenv("E2E_DATE_FIELD_ID")
    if not field_id:
        pytest.skip("E2E_DATE_FIELD_ID environment variable not set")
    return int(field_id)
