"""Fixtures for API tests."""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from docsync.database import get_db
from docsync.main import app

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
async def client(services, session_factory):
    """Async client against the app, wired to the test database and fakes."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
    del app.state.services


@pytest.fixture
def scan_task():
    """Scan task with a mocked broker call."""
    with patch("docsync.api.routes.projects.scan_repository") as task:
        task.delay = MagicMock()
        yield task
