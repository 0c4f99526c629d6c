"""Tests for project, progress, commit, webhook and lock endpoints."""

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from docsync.api.routes.projects import webhook_url
from docsync.models.ingestion import IngestionRun, RunStatus
from docsync.models.project import Project
from docsync.services.github_service import CommitInfo
from tests.test_api.conftest import CRON_HEADERS


class TestImport:
    """Test repository import."""

    @pytest.mark.asyncio
    async def test_import_creates_project_and_queues_scan(self, client, session_factory, services, scan_task):
        response = await client.post(
            "/api/projects/import",
            json={"repo_owner": "acme", "repo_name": "handbook"},
            headers=CRON_HEADERS,
        )

        data = response.json()
        assert response.status_code == 201
        assert data["status"] == "queued"
        scan_task.delay.assert_called_once_with(data["project_id"], data["run_id"], "import")
        assert services.github.webhooks[0]["url"].endswith("/webhooks/github")

        async with session_factory() as session:
            project = await session.scalar(select(Project))
            run = await session.get(IngestionRun, uuid.UUID(data["run_id"]))
        assert project.full_name == "acme/handbook"
        assert project.webhook_id == 4242
        assert run.status == RunStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_duplicate_import_conflicts(self, client, project, scan_task):
        response = await client.post(
            "/api/projects/import",
            json={"repo_owner": "acme", "repo_name": "handbook"},
            headers=CRON_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["project_id"] == str(project.id)
        scan_task.delay.assert_not_called()

    @pytest.mark.asyncio
    async def test_import_requires_authorization(self, client, scan_task):
        response = await client.post(
            "/api/projects/import", json={"repo_owner": "acme", "repo_name": "handbook"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_broker_failure_leaves_run_pending(self, client, scan_task):
        scan_task.delay.side_effect = ConnectionError("broker down")

        response = await client.post(
            "/api/projects/import",
            json={"repo_owner": "acme", "repo_name": "handbook"},
            headers=CRON_HEADERS,
        )

        assert response.status_code == 201
        assert response.json()["status"] == "pending"


class TestRescan:
    """Test manual rescans."""

    @pytest.mark.asyncio
    async def test_rescan_returns_active_run(self, client, project, scan_task):
        first = (await client.post(f"/api/projects/{project.id}/rescan", headers=CRON_HEADERS)).json()
        second = (await client.post(f"/api/projects/{project.id}/rescan", headers=CRON_HEADERS)).json()

        assert first["status"] == "queued"
        assert second["status"] == "already_running"
        assert second["run_id"] == first["run_id"]
        assert scan_task.delay.call_count == 1

    @pytest.mark.asyncio
    async def test_forced_rescan_supersedes_active_run(self, client, services, session_factory, project, scan_task):
        first = (await client.post(f"/api/projects/{project.id}/rescan", headers=CRON_HEADERS)).json()
        await services.locks.acquire(project.lock_name, timedelta(minutes=30))

        response = await client.post(
            f"/api/projects/{project.id}/rescan?force=true", headers=CRON_HEADERS
        )

        data = response.json()
        assert data["status"] == "queued"
        assert data["run_id"] != first["run_id"]
        async with session_factory() as session:
            runs = (await session.execute(select(IngestionRun.status))).scalars().all()
        assert sorted(runs) == [RunStatus.FAILED.value, RunStatus.PENDING.value]
        # Lock was released by the forced rescan
        assert await services.locks.acquire(project.lock_name, timedelta(minutes=5)) is True

    @pytest.mark.asyncio
    async def test_rescan_unknown_project(self, client, scan_task):
        response = await client.post(
            "/api/projects/00000000-0000-0000-0000-000000000000/rescan", headers=CRON_HEADERS
        )

        assert response.status_code == 404


class TestReadEndpoints:
    """Test listing, files and progress."""

    @pytest.mark.asyncio
    async def test_list_and_get_project(self, client, project):
        listing = (await client.get("/api/projects")).json()
        detail = (await client.get(f"/api/projects/{project.id}")).json()

        assert listing["total"] == 1
        assert listing["projects"][0]["repo_url"] == "https://github.com/acme/handbook"
        assert detail["default_branch"] == "main"

    @pytest.mark.asyncio
    async def test_files_lists_current_versions(self, client, services, project):
        await services.scan_service().run_scan(project.id)

        data = (await client.get(f"/api/projects/{project.id}/files")).json()

        assert data["total"] == 3
        assert [f["path"] for f in data["files"]] == ["README.md", "docs/guide.md", "docs/projectbrief.md"]

    @pytest.mark.asyncio
    async def test_progress_without_runs(self, client, project):
        response = await client.get(f"/api/projects/{project.id}/progress")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_progress_of_completed_scan(self, client, services, project):
        await services.scan_service().run_scan(project.id)

        data = (await client.get(f"/api/projects/{project.id}/progress")).json()

        assert data["status"] == "completed"
        assert data["phase"] == "done"
        assert data["trigger"] == "import"
        assert data["counters"]["total"] == 3
        assert data["counters"]["indexed"] == 3

    @pytest.mark.asyncio
    async def test_progress_stream(self, client, services, project):
        await services.scan_service().run_scan(project.id)

        response = await client.get(f"/api/projects/{project.id}/progress/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: ready")
        assert "event: done" in response.text

    @pytest.mark.asyncio
    async def test_progress_stream_unknown_project(self, client):
        response = await client.get("/api/projects/00000000-0000-0000-0000-000000000000/progress/stream")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_file_content_comes_from_store(self, client, services, project):
        await services.scan_service().run_scan(project.id)
        files = (await client.get(f"/api/projects/{project.id}/files")).json()["files"]
        readme = next(f for f in files if f["path"] == "README.md")

        response = await client.get(f"/api/projects/{project.id}/files/{readme['id']}/content")

        assert response.status_code == 200
        assert response.json()["content"] == services.github.files["README.md"]

    @pytest.mark.asyncio
    async def test_file_content_of_other_project_is_not_found(self, client, services, project):
        await services.scan_service().run_scan(project.id)
        file_id = (await client.get(f"/api/projects/{project.id}/files")).json()["files"][0]["id"]

        response = await client.get(f"/api/projects/{uuid.uuid4()}/files/{file_id}/content")

        assert response.status_code == 404


class TestCommits:
    """Test commit history backfill and listing."""

    @pytest.fixture
    def commits(self, services):
        services.github.commits = [
            CommitInfo(sha="c0ffee02", message="Rewrite guide", author_login="sam", committed_at=datetime(2026, 3, 2)),
            CommitInfo(sha="c0ffee01", message="Add guide", author_login="sam", committed_at=datetime(2026, 3, 1)),
        ]
        return services.github.commits

    @pytest.mark.asyncio
    async def test_sync_stores_new_commits_once(self, client, project, commits):
        url = f"/api/projects/{project.id}/commits/sync"
        first = (await client.post(url, headers=CRON_HEADERS)).json()
        second = (await client.post(url, headers=CRON_HEADERS)).json()

        assert first == {"total": 2, "saved": 2}
        assert second == {"total": 2, "saved": 0}

    @pytest.mark.asyncio
    async def test_list_commits_newest_first(self, client, project, commits):
        await client.post(f"/api/projects/{project.id}/commits/sync", headers=CRON_HEADERS)

        data = (await client.get(f"/api/projects/{project.id}/commits")).json()

        assert data["total"] == 2
        assert [c["sha"] for c in data["commits"]] == ["c0ffee02", "c0ffee01"]
        assert data["commits"][0]["message"] == "Rewrite guide"

    @pytest.mark.asyncio
    async def test_sync_requires_authorization(self, client, project, commits):
        response = await client.post(f"/api/projects/{project.id}/commits/sync")

        assert response.status_code == 401


class TestWebhookAdmin:
    """Test webhook status and registration."""

    @pytest.mark.asyncio
    async def test_status_matches_hook_by_url(self, client, services, project):
        services.github.hooks = [
            {"id": 7, "active": True, "events": ["push"], "config": {"url": webhook_url()}},
            {"id": 8, "active": False, "events": ["issues"], "config": {"url": "https://ci.example.com/hook"}},
        ]

        data = (await client.get(f"/api/projects/{project.id}/webhook-status", headers=CRON_HEADERS)).json()

        assert data["expected_url"] == webhook_url()
        assert [h["id"] for h in data["webhooks"]] == [7, 8]
        assert data["id_matches"] is False
        assert data["url_matches"] is True
        assert data["is_configured"] is True

    @pytest.mark.asyncio
    async def test_status_without_hooks(self, client, project):
        data = (await client.get(f"/api/projects/{project.id}/webhook-status", headers=CRON_HEADERS)).json()

        assert data["webhooks"] == []
        assert data["is_configured"] is False

    @pytest.mark.asyncio
    async def test_create_webhook_stores_id(self, client, services, session_factory, project):
        response = await client.post(f"/api/projects/{project.id}/create-webhook", headers=CRON_HEADERS)

        assert response.status_code == 201
        assert response.json()["webhook_id"] == 4242
        async with session_factory() as session:
            stored = await session.get(Project, project.id)
        assert stored.webhook_id == 4242

    @pytest.mark.asyncio
    async def test_existing_webhook_conflicts(self, client, services, project):
        url = f"/api/projects/{project.id}/create-webhook"
        await client.post(url, headers=CRON_HEADERS)

        response = await client.post(url, headers=CRON_HEADERS)

        assert response.status_code == 409
        assert response.json()["webhook_id"] == 4242
        assert len(services.github.hooks) == 1

    @pytest.mark.asyncio
    async def test_replace_deletes_previous_hook(self, client, services, session_factory, project):
        url = f"/api/projects/{project.id}/create-webhook"
        await client.post(url, headers=CRON_HEADERS)

        response = await client.post(url, params={"replace": "true"}, headers=CRON_HEADERS)

        data = response.json()
        assert response.status_code == 201
        assert data["replaced"] == [4242]
        assert data["webhook_id"] == 4243
        assert services.github.deleted_hooks == [4242]
        assert [h["id"] for h in services.github.hooks] == [4243]
        async with session_factory() as session:
            stored = await session.get(Project, project.id)
        assert stored.webhook_id == 4243


class TestLocks:
    """Test lock administration."""

    @pytest.mark.asyncio
    async def test_list_locks(self, client, services):
        await services.locks.acquire("sync:acme/handbook", timedelta(minutes=5))

        data = (await client.get("/api/projects/locks", headers=CRON_HEADERS)).json()

        assert [(l["job_name"], l["state"]) for l in data["locks"]] == [("sync:acme/handbook", "leased")]

    @pytest.mark.asyncio
    async def test_reset_locks_by_prefix(self, client, services):
        await services.locks.acquire("sync:acme/handbook", timedelta(minutes=5))
        await services.locks.acquire("cron:sanity-check", timedelta(minutes=5))

        response = await client.post(
            "/api/projects/locks/reset", json={"prefix": "sync:"}, headers=CRON_HEADERS
        )

        assert response.json()["released"] == ["sync:acme/handbook"]
        names = [lock.job_name for lock in await services.locks.list_locks()]
        assert names == ["cron:sanity-check"]
