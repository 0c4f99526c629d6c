"""Detached AI analysis regeneration."""

import asyncio
import logging
import uuid

from docsync.celery_app import celery_app
from docsync.models.project import Project
from docsync.services.analysis_service import AnalysisService
from docsync.tasks.base import task_services

logger = logging.getLogger(__name__)


async def regenerate_analysis_async(project_id: str, refresh: bool, messages: list[str]) -> None:
    async with task_services() as services:
        async with services.session_factory() as session:
            project = await session.get(Project, uuid.UUID(project_id))
            if project is None:
                logger.warning(f"Project {project_id} no longer exists; skipping analysis")
                return
            name = project.repo_name

            analysis = AnalysisService(session, services.llm)
            if messages:
                await analysis.generate_release_note(project.id, messages)
            if refresh:
                await analysis.analyze(project.id, name)


@celery_app.task(bind=True, max_retries=2)
def regenerate_analysis(self, project_id: str, refresh: bool = True, messages: list[str] | None = None) -> None:
    """Regenerate analysis and the release note; failures are logged, not propagated to callers."""
    try:
        asyncio.run(regenerate_analysis_async(project_id, refresh, messages or []))
    except Exception as exc:
        logger.error(f"Analysis for project {project_id} failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
