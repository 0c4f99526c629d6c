"""Drain the webhook job queue."""

import asyncio
import logging
from typing import Any

from docsync.celery_app import celery_app
from docsync.config import get_settings
from docsync.tasks.base import task_services

logger = logging.getLogger(__name__)
settings = get_settings()


async def process_webhook_jobs_async(limit: int | None = None) -> dict[str, Any]:
    async with task_services() as services:
        queue = services.job_queue()
        reset = await queue.reset_stale()
        result = await queue.process_pending(services.webhook_processor(), limit)
        return {"reset": reset, **result.to_dict()}


@celery_app.task
def process_webhook_jobs(limit: int | None = None) -> dict[str, Any]:
    """Process up to ``limit`` pending webhook jobs."""
    result = asyncio.run(process_webhook_jobs_async(limit or settings.webhook_job_batch_size))
    if result["processed"]:
        logger.info(
            f"Webhook jobs: {result['succeeded']} done, {result['failed']} failed, "
            f"{result['exhausted']} exhausted"
        )
    return result
