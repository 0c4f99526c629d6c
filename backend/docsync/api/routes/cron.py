"""Scheduled trigger endpoints.

Each endpoint accepts GET (platform schedulers) and POST (manual calls) and
requires trigger authorization.
"""

from fastapi import APIRouter, Query

from docsync.api.deps import AppServices, DbSession, TriggerAuth
from docsync.config import get_settings
from docsync.services.cleanup_service import CleanupService

settings = get_settings()

router = APIRouter(dependencies=[TriggerAuth])


@router.api_route("/process-webhook-jobs", methods=["GET", "POST"])
async def process_webhook_jobs(
    services: AppServices,
    limit: int = Query(default=settings.webhook_job_batch_size, ge=1, le=100),
):
    """Drain a batch of pending webhook jobs."""
    queue = services.job_queue()
    reset = await queue.reset_stale()
    result = await queue.process_pending(services.webhook_processor(), limit)
    return {"status": "ok", "reset": reset, **result.to_dict()}


@router.api_route("/sanity-check", methods=["GET", "POST"])
async def sanity_check(services: AppServices):
    """Reconcile every project's full tree (409 if a sweep is already running)."""
    result = await services.scan_service().sanity_check()
    return {"status": "ok", **result}


@router.api_route("/cleanup-old-chunks", methods=["GET", "POST"])
async def cleanup_old_chunks(db: DbSession):
    """Delete one batch of chunks invalidated before the retention window."""
    result = await CleanupService(db).sweep()
    return {"status": "ok", **result}


@router.api_route("/scan-worker", methods=["GET", "POST"])
async def scan_worker(services: AppServices):
    """Run the oldest pending ingestion run."""
    result = await services.scan_service().run_pending()
    if result is None:
        return {"status": "idle"}
    return {"status": "ok", **result}
