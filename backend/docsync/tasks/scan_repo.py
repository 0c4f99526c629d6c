"""Full repository scan task (import, rescan)."""

import asyncio
import logging
import uuid
from typing import Any

from docsync.celery_app import celery_app
from docsync.exceptions import LockContentionError, TransientExternalError
from docsync.models.ingestion import SyncTrigger
from docsync.tasks.base import task_services

logger = logging.getLogger(__name__)


async def scan_repository_async(
    project_id: str,
    run_id: str | None = None,
    trigger: str = SyncTrigger.IMPORT.value,
) -> dict[str, Any]:
    async with task_services() as services:
        return await services.scan_service().run_scan(
            uuid.UUID(project_id),
            run_id=uuid.UUID(run_id) if run_id else None,
            trigger=SyncTrigger(trigger),
        )


@celery_app.task(bind=True, max_retries=2)
def scan_repository(
    self,
    project_id: str,
    run_id: str | None = None,
    trigger: str = SyncTrigger.IMPORT.value,
) -> dict[str, Any]:
    """Celery task entrypoint for scans.

    A transient failure marks the run failed; the retry starts a fresh run.
    A run another worker is already executing is left to that worker.
    """
    try:
        return asyncio.run(scan_repository_async(project_id, run_id, trigger))
    except LockContentionError as exc:
        logger.info(f"Scan of project {project_id} skipped: {exc}")
        return {"status": "busy", "project_id": project_id, "run_id": run_id}
    except TransientExternalError as exc:
        logger.error(f"Scan of project {project_id} failed, retrying: {exc}")
        raise self.retry(
            exc=exc,
            countdown=30 * (2 ** self.request.retries),
            kwargs={"project_id": project_id, "run_id": None, "trigger": trigger},
        )
