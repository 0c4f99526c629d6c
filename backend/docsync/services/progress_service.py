"""Ingestion run state machine and progress counters."""

import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.core.clock import utc_now
from docsync.exceptions import RunFailedError, SyncError
from docsync.models.ingestion import (
    ACTIVE_STATUSES,
    IngestionRun,
    RunPhase,
    RunStatus,
    ScanProgress,
    SyncTrigger,
)

logger = logging.getLogger(__name__)

REVIEW_STEPS = 4

# Forward order of the running phases
_PHASE_ORDER = {
    RunPhase.INDEXING: 0,
    RunPhase.EMBEDDING: 1,
    RunPhase.REVIEW: 2,
    RunPhase.DONE: 3,
}

_COUNTER_COLUMNS = {
    "total": "files_total",
    "indexed": "files_indexed",
    "chunks": "chunks_total",
    "review_done": "review_done",
    "review_total": "review_total",
}


class ProgressTracker:
    """Drives one run through its phases and buffers its counters.

    Only the holder of the repository lock owns a tracker for a run.
    Counters are kept in memory and written on :meth:`flush`; stored
    values never decrease.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.run_id: uuid.UUID | None = None
        self.project_id: uuid.UUID | None = None
        self.phase: RunPhase | None = None
        self._counters = dict.fromkeys(_COUNTER_COLUMNS, 0)
        self._stored = dict.fromkeys(_COUNTER_COLUMNS, 0)

    @property
    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    async def start(
        self,
        project_id: uuid.UUID,
        trigger: SyncTrigger,
        run_id: uuid.UUID | None = None,
    ) -> IngestionRun:
        """Adopt a pending/running run or create a new one, then mark it running."""
        now = utc_now()
        if run_id is not None:
            run = await self.session.get(IngestionRun, run_id)
            if run is None or run.project_id != project_id:
                raise RunFailedError("Run not found for project", run_id=run_id, project_id=project_id)
            if not run.is_active:
                raise RunFailedError(
                    f"Run is already {run.status}", run_id=run_id, project_id=project_id
                )
        else:
            run = IngestionRun(project_id=project_id, trigger=trigger.value)
            self.session.add(run)

        run.status = RunStatus.RUNNING.value
        run.phase = RunPhase.INDEXING.value
        run.started_at = run.started_at or now
        await self.session.flush()

        result = await self.session.execute(
            select(ScanProgress).where(ScanProgress.run_id == run.id)
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            progress = ScanProgress(
                run_id=run.id,
                project_id=project_id,
                files_total=0,
                files_indexed=0,
                chunks_total=0,
                review_done=0,
                review_total=REVIEW_STEPS,
            )
            self.session.add(progress)

        await self.session.commit()

        self.run_id = run.id
        self.project_id = project_id
        self.phase = RunPhase.INDEXING
        for key, column in _COUNTER_COLUMNS.items():
            value = getattr(progress, column) or 0
            self._stored[key] = value
            self._counters[key] = value

        logger.info(f"Run {run.id} started ({trigger.value}) for project {project_id}")
        return run

    def _require_run(self) -> uuid.UUID:
        if self.run_id is None:
            raise RuntimeError("ProgressTracker.start() must be called first")
        return self.run_id

    def _active_run(self, run_id: uuid.UUID):
        """WHERE clause matching the run only while it is pending or running."""
        return (IngestionRun.id == run_id) & IngestionRun.status.in_(ACTIVE_STATUSES)

    async def _update_active_run(self, **values: Any) -> None:
        """Update the run row; raise if another actor already finished it."""
        run_id = self._require_run()
        result = await self.session.execute(
            update(IngestionRun).where(self._active_run(run_id)).values(**values)
        )
        if not result.rowcount:
            await self.session.rollback()
            raise RunFailedError("Run superseded", run_id=run_id, project_id=self.project_id)

    async def transition(self, phase: RunPhase) -> None:
        """Move to ``phase`` (running). Counters are flushed first.

        Raises :class:`RunFailedError` if the run was finished elsewhere, for
        example by a forced rescan.
        """
        run_id = self._require_run()
        if phase in (RunPhase.DONE, RunPhase.FAILED):
            raise ValueError(f"Use complete()/fail() to enter {phase.value}")
        if self.phase is not None and _PHASE_ORDER[phase] < _PHASE_ORDER.get(self.phase, 0):
            raise ValueError(f"Cannot move run from {self.phase.value} back to {phase.value}")

        await self._write_counters()
        await self._update_active_run(phase=phase.value, status=RunStatus.RUNNING.value)
        await self.session.commit()
        self.phase = phase
        logger.info(f"Run {run_id} entered phase {phase.value}")

    def set_total(self, n: int) -> None:
        self._counters["total"] = max(self._counters["total"], n)

    def add_indexed(self, n: int = 1) -> None:
        self._counters["indexed"] += n

    def add_chunks(self, n: int) -> None:
        self._counters["chunks"] += n

    def set_review(self, done: int, total: int | None = None) -> None:
        self._counters["review_done"] = max(self._counters["review_done"], done)
        if total is not None:
            self._counters["review_total"] = max(self._counters["review_total"], total)

    async def _write_counters(self) -> None:
        values = {}
        for key, column in _COUNTER_COLUMNS.items():
            new = max(self._stored[key], self._counters[key])
            if new != self._stored[key]:
                values[column] = new
        if not values:
            return
        values["updated_at"] = utc_now()
        run_id = self._require_run()
        # Counters of a finished run are frozen
        await self.session.execute(
            update(ScanProgress)
            .where(
                ScanProgress.run_id.in_(
                    select(IngestionRun.id).where(self._active_run(run_id))
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        for key, column in _COUNTER_COLUMNS.items():
            if column in values:
                self._stored[key] = values[column]

    async def flush(self) -> None:
        """Persist buffered counters and commit the session.

        Raises :class:`RunFailedError` once the run has been finished
        elsewhere, so a superseded pipeline stops at the next batch boundary.
        """
        run_id = self._require_run()
        status = await self.session.scalar(
            select(IngestionRun.status).where(IngestionRun.id == run_id)
        )
        if status not in ACTIVE_STATUSES:
            await self.session.rollback()
            raise RunFailedError("Run superseded", run_id=run_id, project_id=self.project_id)
        await self._write_counters()
        await self.session.commit()

    async def complete(self) -> None:
        run_id = self._require_run()
        await self._write_counters()
        await self._update_active_run(
            phase=RunPhase.DONE.value,
            status=RunStatus.COMPLETED.value,
            finished_at=utc_now(),
        )
        await self.session.commit()
        self.phase = RunPhase.DONE
        logger.info(f"Run {run_id} completed")

    async def fail(self, error: BaseException) -> dict[str, Any]:
        """Mark the run failed with a structured error. Returns the error dict.

        A run that is already terminal keeps its recorded outcome.
        """
        run_id = self._require_run()
        details = SyncError.from_exception(
            error, run_id=run_id, project_id=self.project_id, phase=self.phase.value if self.phase else None
        ).to_dict()

        # The session may hold a failed transaction from the error being reported
        await self.session.rollback()
        await self._write_counters()
        result = await self.session.execute(
            update(IngestionRun)
            .where(self._active_run(run_id))
            .values(
                phase=RunPhase.FAILED.value,
                status=RunStatus.FAILED.value,
                finished_at=utc_now(),
                error=details,
            )
        )
        await self.session.commit()
        self.phase = RunPhase.FAILED
        if result.rowcount:
            logger.error(f"Run {run_id} failed: {details['message']}")
        else:
            logger.warning(f"Run {run_id} was already finished; keeping its outcome")
        return details


class ProgressService:
    """Read and administrative operations on runs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def snapshot(self, project_id: uuid.UUID) -> IngestionRun | None:
        """Latest run for the project, with its counters loaded."""
        result = await self.session.execute(
            select(IngestionRun)
            .where(IngestionRun.project_id == project_id)
            .order_by(IngestionRun.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def active_run(self, project_id: uuid.UUID) -> IngestionRun | None:
        result = await self.session.execute(
            select(IngestionRun)
            .where(
                IngestionRun.project_id == project_id,
                IngestionRun.status.in_(ACTIVE_STATUSES),
            )
            .order_by(IngestionRun.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_pending_run(self, project_id: uuid.UUID, trigger: SyncTrigger) -> IngestionRun:
        """Create a pending run so its id can be returned before work starts."""
        run = IngestionRun(
            project_id=project_id,
            trigger=trigger.value,
            phase=RunPhase.INDEXING.value,
            status=RunStatus.PENDING.value,
        )
        self.session.add(run)
        await self.session.flush()
        self.session.add(
            ScanProgress(
                run_id=run.id,
                project_id=project_id,
                files_total=0,
                files_indexed=0,
                chunks_total=0,
                review_done=0,
                review_total=REVIEW_STEPS,
            )
        )
        await self.session.commit()
        return run

    async def fail_active_runs(self, project_id: uuid.UUID, reason: str) -> int:
        """Mark every pending/running run of the project as failed."""
        error = RunFailedError(reason, project_id=project_id).to_dict()
        result = await self.session.execute(
            update(IngestionRun)
            .where(
                IngestionRun.project_id == project_id,
                IngestionRun.status.in_(ACTIVE_STATUSES),
            )
            .values(
                phase=RunPhase.FAILED.value,
                status=RunStatus.FAILED.value,
                finished_at=utc_now(),
                error=error,
            )
        )
        await self.session.commit()
        return result.rowcount or 0

    async def oldest_pending_run(self) -> IngestionRun | None:
        result = await self.session.execute(
            select(IngestionRun)
            .where(IngestionRun.status == RunStatus.PENDING.value)
            .order_by(IngestionRun.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()
