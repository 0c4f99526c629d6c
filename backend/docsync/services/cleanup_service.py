"""Retention sweep for invalidated chunks."""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.models.repo_file import RepoFileChunk

logger = logging.getLogger(__name__)
settings = get_settings()


class CleanupService:
    """Deletes non-current chunks older than the retention window.

    File version rows are kept for history; only their chunks are removed.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def sweep(
        self,
        retention_days: int | None = None,
        batch_size: int | None = None,
    ) -> dict[str, Any]:
        """Delete one bounded batch of expired chunks."""
        if retention_days is None:
            retention_days = settings.chunk_retention_days
        batch_size = batch_size or settings.cleanup_batch_size
        cutoff = utc_now() - timedelta(days=retention_days)

        ids = (
            await self.session.execute(
                select(RepoFileChunk.id)
                .where(
                    RepoFileChunk.is_current.is_(False),
                    RepoFileChunk.invalidated_at.is_not(None),
                    RepoFileChunk.invalidated_at < cutoff,
                )
                .order_by(RepoFileChunk.invalidated_at)
                .limit(batch_size)
            )
        ).scalars().all()

        deleted = 0
        if ids:
            result = await self.session.execute(
                delete(RepoFileChunk).where(RepoFileChunk.id.in_(ids))
            )
            await self.session.commit()
            deleted = result.rowcount or 0

        logger.info(f"Retention sweep deleted {deleted} chunks invalidated before {cutoff.isoformat()}")
        return {
            "deleted": deleted,
            "cutoff": cutoff.isoformat(),
            "has_more": deleted >= batch_size,
        }
