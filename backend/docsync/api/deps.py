"""API dependencies for dependency injection."""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import get_settings
from docsync.database import get_db
from docsync.runtime import Services

logger = logging.getLogger(__name__)
settings = get_settings()

# Type aliases for cleaner signatures
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_services(request: Request) -> Services:
    """Shared service container built in the app lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


AppServices = Annotated[Services, Depends(get_services)]


async def require_trigger_auth(request: Request) -> None:
    """Authorize cron and manual trigger calls.

    Accepts ``Authorization: Bearer <cron_secret>`` or the scheduler's
    trigger header set to ``1``. With no secret configured every call is
    allowed (development mode).
    """
    secret = settings.cron_secret
    if not secret:
        logger.warning(f"CRON_SECRET not set; allowing unauthenticated call to {request.url.path}")
        return

    if request.headers.get(settings.cron_trigger_header) == "1":
        return

    authorization = request.headers.get("authorization") or ""
    if hmac.compare_digest(authorization, f"Bearer {secret}"):
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


TriggerAuth = Depends(require_trigger_auth)
