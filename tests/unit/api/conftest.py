"""Fixtures for API unit tests: app over the in-memory SQLite store, lifespan running, AsyncClient."""

import pytest
from httpx import ASGITransport, AsyncClient

from broker_audit.main import create_app


@pytest.fixture
def api_settings(make_settings):
    # Retention scheduler started but parked, so it never races test data.
    return make_settings(retention_initial_delay_seconds=3600)


@pytest.fixture
def app(api_settings, sqlite_store):
    return create_app(api_settings, store=sqlite_store)


@pytest.fixture
async def async_client(app):
    """Async HTTP client with the app lifespan (writer, retention) running."""
    transport = ASGITransport(app=app)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
def principal_headers():
    return {"X-Authenticated-User": "alice", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
