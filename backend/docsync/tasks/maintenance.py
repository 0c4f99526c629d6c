"""Scheduled maintenance: scan worker, sanity check and retention sweep."""

import asyncio
import logging
from typing import Any

from docsync.celery_app import celery_app
from docsync.exceptions import LockContentionError
from docsync.services.cleanup_service import CleanupService
from docsync.tasks.base import task_services

logger = logging.getLogger(__name__)


async def scan_worker_async() -> dict[str, Any] | None:
    async with task_services() as services:
        return await services.scan_service().run_pending()


async def sanity_check_async() -> dict[str, Any]:
    async with task_services() as services:
        return await services.scan_service().sanity_check()


async def cleanup_old_chunks_async() -> dict[str, Any]:
    async with task_services() as services:
        async with services.session_factory() as session:
            return await CleanupService(session).sweep()


@celery_app.task
def scan_worker() -> dict[str, Any] | None:
    """Run the oldest pending ingestion run."""
    return asyncio.run(scan_worker_async())


@celery_app.task
def sanity_check() -> dict[str, Any]:
    """Reconcile every project's full tree."""
    try:
        return asyncio.run(sanity_check_async())
    except LockContentionError:
        logger.info("Sanity check already running, skipping")
        return {"skipped": True}


@celery_app.task
def cleanup_old_chunks() -> dict[str, Any]:
    """Delete one batch of expired chunks."""
    return asyncio.run(cleanup_old_chunks_async())
