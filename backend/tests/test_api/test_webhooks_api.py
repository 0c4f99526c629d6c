"""Tests for the GitHub webhook endpoint."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from docsync.api.routes import webhooks
from docsync.exceptions import SyncError
from docsync.models.webhook import WebhookDelivery, WebhookJob
from docsync.services.sync_service import ZERO_SHA
from tests.conftest import push_body, push_event, sign

PUSH_COMMITS = [
    {"id": "c1", "message": "Update guide", "added": [], "modified": ["docs/guide.md"], "removed": []}
]


def headers(body: bytes, event: str = "push", delivery: str = "delivery-1", signature: str | None = None):
    return {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": signature or sign(body),
        "Content-Type": "application/json",
    }


class TestWebhookAuth:
    """Test signature checks."""

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, client):
        response = await client.post(
            "/webhooks/github", content=b"{}", headers={"X-GitHub-Event": "push"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self, client):
        body = push_body(push_event())

        response = await client.post(
            "/webhooks/github", content=body, headers=headers(body, signature="sha256=deadbeef")
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_json_is_rejected(self, client):
        body = b"not json"

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert response.status_code == 400


class TestWebhookEvents:
    """Test event routing."""

    @pytest.mark.asyncio
    async def test_ping(self, client):
        body = json.dumps({"zen": "Design for failure."}).encode()

        response = await client.post("/webhooks/github", content=body, headers=headers(body, event="ping"))

        assert response.json() == {"status": "pong"}

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, client):
        body = json.dumps({"action": "opened"}).encode()

        response = await client.post("/webhooks/github", content=body, headers=headers(body, event="issues"))

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_non_default_branch_is_skipped(self, client, project):
        body = push_body(push_event(ref="refs/heads/feature"))

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert response.json()["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_unknown_repository(self, client, project):
        body = push_body(push_event(owner="someone-else"))

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_push_is_queued(self, client, session_factory, project):
        body = push_body(push_event(before=ZERO_SHA, commits=PUSH_COMMITS))

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "queued"
        async with session_factory() as session:
            job = await session.scalar(select(WebhookJob).where(WebhookJob.delivery_id == "delivery-1"))
        assert str(job.id) == data["job_id"]
        assert job.project_id == project.id

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged(self, client, session_factory, project):
        body = push_body(push_event(before=ZERO_SHA, commits=PUSH_COMMITS))
        await client.post("/webhooks/github", content=body, headers=headers(body))

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate delivery"
        async with session_factory() as session:
            jobs = (await session.execute(select(WebhookJob))).scalars().all()
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_inline_mode_processes_push(self, client, session_factory, project):
        body = push_body(push_event(before=ZERO_SHA, commits=PUSH_COMMITS))

        with patch.object(webhooks.settings, "webhook_processing_mode", "inline"):
            response = await client.post("/webhooks/github", content=body, headers=headers(body))

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "processed"
        assert data["result"]["synced"] == ["docs/guide.md"]
        async with session_factory() as session:
            delivery = await session.get(WebhookDelivery, "delivery-1")
        assert delivery.status == "done"

    @pytest.mark.asyncio
    async def test_failed_inline_delivery_is_processed_on_redelivery(self, client, services, session_factory, project):
        body = push_body(push_event(before=ZERO_SHA, commits=PUSH_COMMITS))
        failing = MagicMock()
        failing.process_push = AsyncMock(side_effect=SyncError("Reconcile failed"))

        with patch.object(webhooks.settings, "webhook_processing_mode", "inline"):
            with patch.object(services, "webhook_processor", return_value=failing):
                first = await client.post("/webhooks/github", content=body, headers=headers(body))
            second = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert first.status_code == 500
        assert first.json()["error"]["message"] == "Reconcile failed"
        assert second.status_code == 200
        assert second.json()["status"] == "processed"
        async with session_factory() as session:
            delivery = await session.get(WebhookDelivery, "delivery-1")
        assert delivery.status == "done"

    @pytest.mark.asyncio
    async def test_exhausted_job_is_requeued_on_redelivery(self, client, services, session_factory, project):
        body = push_body(push_event(before=ZERO_SHA, commits=PUSH_COMMITS))
        await client.post("/webhooks/github", content=body, headers=headers(body))
        async with session_factory() as session:
            job = await session.scalar(select(WebhookJob).where(WebhookJob.delivery_id == "delivery-1"))
        job.retry_count = job.max_retries - 1
        assert await services.job_queue().mark_failed(job, SyncError("GitHub API unreachable")) is True

        response = await client.post("/webhooks/github", content=body, headers=headers(body))

        assert response.json()["status"] == "queued"
        async with session_factory() as session:
            requeued = await session.get(WebhookJob, job.id)
        assert requeued.status == "pending"
        assert requeued.retry_count == 0
