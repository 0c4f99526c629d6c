"""Ingestion progress: JSON snapshot and live event stream."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from docsync.api.deps import AppServices, DbSession
from docsync.models.project import Project
from docsync.schemas.progress import ProgressCounters, RunProgressResponse
from docsync.services.progress_service import ProgressService
from docsync.services.progress_stream import progress_events

router = APIRouter()


async def ensure_project(db, project_id: UUID) -> None:
    if not await db.get(Project, project_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found",
        )


@router.get("/{project_id}/progress", response_model=RunProgressResponse)
async def get_progress(project_id: UUID, db: DbSession):
    """Latest run and its counters."""
    await ensure_project(db, project_id)
    run = await ProgressService(db).snapshot(project_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No ingestion runs for this project",
        )

    counters = run.progress.as_counters() if run.progress else {}
    return RunProgressResponse(
        run_id=run.id,
        phase=run.phase,
        status=run.status,
        trigger=run.trigger,
        counters=ProgressCounters(**counters),
        error=run.error,
        created_at=run.created_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


@router.get("/{project_id}/progress/stream")
async def stream_progress(project_id: UUID, request: Request, db: DbSession, services: AppServices):
    """Server-sent events for the latest run (time-boxed)."""
    await ensure_project(db, project_id)
    await db.close()

    return StreamingResponse(
        progress_events(services.session_factory, project_id, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
