"""Tests for run tracking and progress counters."""

import pytest

from docsync.exceptions import RunFailedError, TransientExternalError
from docsync.models.ingestion import IngestionRun, RunPhase, RunStatus, SyncTrigger
from docsync.services.progress_service import REVIEW_STEPS, ProgressService, ProgressTracker


async def load_run(session_factory, run_id) -> IngestionRun:
    async with session_factory() as session:
        return await session.get(IngestionRun, run_id)


class TestProgressTracker:
    """Test the run state machine."""

    @pytest.mark.asyncio
    async def test_start_creates_running_run(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)

        run = await load_run(session_factory, tracker.run_id)
        assert run.status == RunStatus.RUNNING.value
        assert run.phase == RunPhase.INDEXING.value
        assert run.started_at is not None
        assert run.progress.review_total == REVIEW_STEPS

    @pytest.mark.asyncio
    async def test_start_adopts_pending_run(self, session_factory, project):
        async with session_factory() as session:
            pending = await ProgressService(session).create_pending_run(project.id, SyncTrigger.RESCAN)
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.RESCAN, pending.id)

        assert tracker.run_id == pending.id
        run = await load_run(session_factory, pending.id)
        assert run.status == RunStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_start_rejects_finished_run(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)
            await tracker.complete()

        async with session_factory() as session:
            with pytest.raises(RunFailedError):
                await ProgressTracker(session).start(project.id, SyncTrigger.IMPORT, tracker.run_id)

    @pytest.mark.asyncio
    async def test_phases_only_move_forward(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)
            await tracker.transition(RunPhase.REVIEW)

            with pytest.raises(ValueError):
                await tracker.transition(RunPhase.EMBEDDING)
            with pytest.raises(ValueError):
                await tracker.transition(RunPhase.DONE)

    @pytest.mark.asyncio
    async def test_counters_never_decrease(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)
            tracker.set_total(5)
            tracker.add_indexed(2)
            tracker.add_chunks(7)
            await tracker.flush()

            tracker.set_total(3)
            tracker.set_review(1)
            await tracker.flush()

        run = await load_run(session_factory, tracker.run_id)
        assert run.progress.as_counters() == {
            "total": 5,
            "indexed": 2,
            "chunks": 7,
            "review_done": 1,
            "review_total": REVIEW_STEPS,
        }

    @pytest.mark.asyncio
    async def test_complete_marks_done(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)
            await tracker.transition(RunPhase.EMBEDDING)
            await tracker.complete()

        run = await load_run(session_factory, tracker.run_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.phase == RunPhase.DONE.value
        assert run.finished_at is not None
        assert run.is_terminal

    @pytest.mark.asyncio
    async def test_fail_records_structured_error(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.IMPORT)
            tracker.set_total(4)
            details = await tracker.fail(TransientExternalError("GitHub API unreachable", status=503))

        run = await load_run(session_factory, tracker.run_id)
        assert run.status == RunStatus.FAILED.value
        assert run.phase == RunPhase.FAILED.value
        assert run.error == details
        assert details["kind"] == "transient_external"
        assert details["context"]["phase"] == "indexing"
        assert run.progress.files_total == 4


class TestProgressService:
    """Test run queries and administration."""

    @pytest.mark.asyncio
    async def test_snapshot_returns_latest_run(self, session_factory, project):
        async with session_factory() as session:
            service = ProgressService(session)
            assert await service.snapshot(project.id) is None

            first = await service.create_pending_run(project.id, SyncTrigger.IMPORT)
            await service.fail_active_runs(project.id, "superseded")
            second = await service.create_pending_run(project.id, SyncTrigger.RESCAN)

            latest = await service.snapshot(project.id)
            assert latest.id == second.id
            assert latest.id != first.id

    @pytest.mark.asyncio
    async def test_fail_active_runs(self, session_factory, project):
        async with session_factory() as session:
            service = ProgressService(session)
            run = await service.create_pending_run(project.id, SyncTrigger.IMPORT)

            failed = await service.fail_active_runs(project.id, "Superseded by forced rescan")

            assert failed == 1
            assert await service.active_run(project.id) is None

        stored = await load_run(session_factory, run.id)
        assert stored.status == RunStatus.FAILED.value
        assert stored.error["message"] == "Superseded by forced rescan"

    @pytest.mark.asyncio
    async def test_oldest_pending_run(self, session_factory, project):
        async with session_factory() as session:
            service = ProgressService(session)
            first = await service.create_pending_run(project.id, SyncTrigger.IMPORT)
            await service.create_pending_run(project.id, SyncTrigger.RESCAN)

            oldest = await service.oldest_pending_run()

        assert oldest.id == first.id


class TestSupersededRuns:
    """A run finished by another actor stays finished."""

    @pytest.mark.asyncio
    async def test_failed_run_is_not_revived(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.RESCAN)

            async with session_factory() as other:
                await ProgressService(other).fail_active_runs(project.id, "Superseded by forced rescan")

            with pytest.raises(RunFailedError):
                await tracker.transition(RunPhase.EMBEDDING)
            with pytest.raises(RunFailedError):
                await tracker.complete()

        run = await load_run(session_factory, tracker.run_id)
        assert run.status == RunStatus.FAILED.value
        assert run.phase == RunPhase.FAILED.value
        assert run.error["message"] == "Superseded by forced rescan"

    @pytest.mark.asyncio
    async def test_flush_stops_superseded_run(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.RESCAN)
            tracker.set_total(3)
            await tracker.flush()

            async with session_factory() as other:
                await ProgressService(other).fail_active_runs(project.id, "Superseded by forced rescan")

            tracker.add_indexed(2)
            with pytest.raises(RunFailedError):
                await tracker.flush()

        run = await load_run(session_factory, tracker.run_id)
        assert run.progress.files_total == 3
        assert run.progress.files_indexed == 0

    @pytest.mark.asyncio
    async def test_fail_keeps_existing_outcome(self, session_factory, project):
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            await tracker.start(project.id, SyncTrigger.RESCAN)

            async with session_factory() as other:
                await ProgressService(other).fail_active_runs(project.id, "Superseded by forced rescan")

            await tracker.fail(TransientExternalError("GitHub API unreachable"))

        run = await load_run(session_factory, tracker.run_id)
        assert run.error["message"] == "Superseded by forced rescan"
