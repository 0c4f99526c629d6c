"""Process-wide service container.

Shared clients are built once per process (API lifespan or Celery task) and
passed explicitly to the pipeline.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.database import get_session_factory
from docsync.services.embedding_service import EmbeddingService
from docsync.services.github_service import GitHubService
from docsync.services.job_queue import WebhookJobQueue
from docsync.services.llm_service import LLMService
from docsync.services.lock_service import JobLockManager
from docsync.services.scan_service import ScanService
from docsync.services.storage_service import ContentStore
from docsync.services.webhook_service import WebhookProcessor

logger = logging.getLogger(__name__)

AnalysisDispatcher = Callable[[uuid.UUID, bool, list[str]], None]


def dispatch_analysis_task(project_id: uuid.UUID, refresh: bool, messages: list[str]) -> None:
    """Queue detached analysis regeneration."""
    from docsync.tasks.analysis import regenerate_analysis

    regenerate_analysis.delay(str(project_id), refresh, messages)


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    github: GitHubService
    store: ContentStore
    llm: LLMService
    embedder: EmbeddingService
    locks: JobLockManager
    dispatch_analysis: AnalysisDispatcher | None = None
    http_client: httpx.AsyncClient | None = None

    def webhook_processor(self) -> WebhookProcessor:
        return WebhookProcessor(self)

    def scan_service(self) -> ScanService:
        return ScanService(self)

    def job_queue(self) -> WebhookJobQueue:
        return WebhookJobQueue(self.session_factory)

    async def aclose(self) -> None:
        await self.github.aclose()
        await self.store.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


async def create_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dispatch_analysis: AnalysisDispatcher | None = dispatch_analysis_task,
) -> Services:
    """Build shared clients and make sure the storage bucket exists."""
    session_factory = session_factory or get_session_factory()
    http_client = httpx.AsyncClient(timeout=30.0)

    store = ContentStore(client=http_client)
    if not await store.ensure_bucket():
        logger.warning(f"Storage bucket {store.bucket} unavailable; blobs will not be stored")

    llm = LLMService()
    return Services(
        session_factory=session_factory,
        github=GitHubService(client=http_client),
        store=store,
        llm=llm,
        embedder=EmbeddingService(llm),
        locks=JobLockManager(session_factory),
        dispatch_analysis=dispatch_analysis,
        http_client=http_client,
    )
