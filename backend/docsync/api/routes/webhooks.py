"""GitHub webhook handlers."""

import json
import logging
import uuid

from fastapi import APIRouter, Header, HTTPException, Request, status
from sqlalchemy import select

from docsync.api.deps import AppServices, DbSession
from docsync.config import get_settings
from docsync.models.project import Project, repo_url_for
from docsync.services.webhook_service import mark_delivery, register_delivery

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()


@router.post("/github")
async def github_webhook(
    request: Request,
    db: DbSession,
    services: AppServices,
    x_hub_signature_256: str | None = Header(None),
    x_github_event: str | None = Header(None),
    x_github_delivery: str | None = Header(None),
):
    """Handle GitHub webhooks.

    Only pushes to a tracked repository's default branch do work. In queue
    mode the push is stored as a job and acknowledged immediately.
    """
    # Get raw payload for signature verification
    payload = await request.body()

    if not x_hub_signature_256:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature",
        )

    # Verify signature (constant-time comparison)
    if not services.github.verify_webhook_signature(payload, x_hub_signature_256):
        logger.warning(f"Invalid webhook signature for delivery {x_github_delivery}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    # Parse payload
    try:
        data = json.loads(payload)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    event = x_github_event or ""
    delivery_id = x_github_delivery or f"local-{uuid.uuid4()}"

    if not await register_delivery(db, delivery_id, event):
        logger.info(f"Duplicate delivery {delivery_id} acknowledged")
        return {"status": "duplicate delivery", "delivery_id": delivery_id}

    if event == "ping":
        await mark_delivery(db, delivery_id, "done")
        return {"status": "pong"}
    if event != "push":
        await mark_delivery(db, delivery_id, "done")
        return {"status": "ignored", "event": event}

    return await handle_push(data, delivery_id, db, services)


async def handle_push(data: dict, delivery_id: str, db, services):
    """Queue (or run) a push to the default branch."""
    repository = data.get("repository") or {}
    owner = (repository.get("owner") or {}).get("login") or (repository.get("owner") or {}).get("name")
    name = repository.get("name")
    default_branch = repository.get("default_branch") or "main"

    ref = data.get("ref") or ""
    if ref != f"refs/heads/{default_branch}":
        await mark_delivery(db, delivery_id, "done")
        return {"status": "skipped", "reason": f"push to {ref} is not the default branch"}

    result = await db.execute(
        select(Project).where(Project.repo_url == repo_url_for(owner or "", name or ""))
    )
    project = result.scalar_one_or_none()
    if not project:
        await mark_delivery(db, delivery_id, "error", {"message": "Project not found"})
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found",
        )

    if settings.webhook_processing_mode == "inline":
        try:
            outcome = await services.webhook_processor().process_push(
                project.id, data, delivery_id=delivery_id
            )
        except Exception as e:
            await mark_delivery(db, delivery_id, "error", {"message": str(e)})
            raise
        await mark_delivery(db, delivery_id, "done")
        return {"status": "processed", "delivery_id": delivery_id, **outcome}

    job, created = await services.job_queue().enqueue(delivery_id, project.id, data)
    return {
        "status": "queued" if created else "already queued",
        "delivery_id": delivery_id,
        "job_id": str(job.id),
    }
