"""Tests for scheduled trigger endpoints."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from docsync.api import deps
from docsync.services.lock_service import SANITY_CHECK_LOCK
from tests.conftest import push_event
from tests.test_api.conftest import CRON_HEADERS


class TestCronAuth:
    """Test trigger authorization."""

    @pytest.mark.asyncio
    async def test_missing_credentials_are_rejected(self, client):
        response = await client.post("/cron/scan-worker")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret_is_rejected(self, client):
        response = await client.post("/cron/scan-worker", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_bearer_secret_is_accepted(self, client):
        response = await client.post("/cron/scan-worker", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"status": "idle"}

    @pytest.mark.asyncio
    async def test_scheduler_header_is_accepted(self, client):
        response = await client.get("/cron/scan-worker", headers={"x-cron-trigger": "1"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_no_secret_configured_allows_calls(self, client):
        with patch.object(deps.settings, "cron_secret", ""):
            response = await client.get("/cron/scan-worker")

        assert response.status_code == 200


class TestCronJobs:
    """Test the scheduled jobs through their endpoints."""

    @pytest.mark.asyncio
    async def test_process_webhook_jobs(self, client, services, project):
        event = push_event(
            before="0" * 40,
            commits=[{"id": "c1", "message": "docs", "added": ["docs/guide.md"], "modified": [], "removed": []}],
        )
        await services.job_queue().enqueue("delivery-1", project.id, event)

        response = await client.post("/cron/process-webhook-jobs?limit=5", headers=CRON_HEADERS)

        data = response.json()
        assert response.status_code == 200
        assert data["processed"] == 1
        assert data["succeeded"] == 1
        assert (await services.job_queue().stats()).done == 1

    @pytest.mark.asyncio
    async def test_sanity_check(self, client, project):
        response = await client.post("/cron/sanity-check", headers=CRON_HEADERS)

        data = response.json()
        assert response.status_code == 200
        assert data["checked"] == 1

    @pytest.mark.asyncio
    async def test_sanity_check_already_running(self, client, services, project):
        await services.locks.acquire(SANITY_CHECK_LOCK, timedelta(minutes=5))

        response = await client.post("/cron/sanity-check", headers=CRON_HEADERS)

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "lock_contention"

    @pytest.mark.asyncio
    async def test_cleanup_old_chunks(self, client):
        response = await client.get("/cron/cleanup-old-chunks", headers=CRON_HEADERS)

        data = response.json()
        assert response.status_code == 200
        assert data["deleted"] == 0
        assert data["has_more"] is False

    @pytest.mark.asyncio
    async def test_scan_worker_runs_pending_scan(self, client, services, project, scan_task):
        await client.post(f"/api/projects/{project.id}/rescan", headers=CRON_HEADERS)

        response = await client.post("/cron/scan-worker", headers=CRON_HEADERS)

        data = response.json()
        assert data["status"] == "ok"
        assert data["tracked"] == 3
