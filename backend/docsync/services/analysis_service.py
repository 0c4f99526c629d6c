"""AI analysis of a project's documentation.

Generates four reviews (idea, tech, patterns, overview) from the project's
current chunks and keeps a release note for the latest push.
"""

import logging
import posixpath
import uuid
from datetime import timedelta
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.models.analysis import ProjectAnalysis
from docsync.models.repo_file import RepoFile, RepoFileChunk
from docsync.services.llm_service import LLMService
from docsync.services.progress_service import REVIEW_STEPS, ProgressTracker

logger = logging.getLogger(__name__)
settings = get_settings()

MAX_CONTEXT_CHARS = 12000

SYSTEM_PROMPT = (
    "You review software projects from their design documents. "
    "Be concrete, cite file names where useful, and answer in Markdown."
)

IDEA_PROMPT = """Review the product idea described in these documents.
Cover the problem being solved, the target users and the expected impact.

{context}"""

TECH_PROMPT = """Review the technical design described in these documents.
Cover the stack, the architecture and the main risks.

{context}"""

PATTERNS_PROMPT = """Identify the notable design patterns and distinctive ideas in this project.

Idea review:
{idea}

Tech review:
{tech}

Documents:
{context}"""

OVERVIEW_PROMPT = """Write a short project overview (one or two paragraphs): what it is,
how it is built and where development currently stands.

{context}"""

RELEASE_NOTE_PROMPT = """Write a concise release note (a few bullet points) for a push
with these commit messages:

{messages}"""


def is_core_document(path: str) -> bool:
    return posixpath.basename(path) in settings.core_doc_files


class AnalysisService:
    """Generate and store project analysis."""

    def __init__(self, session: AsyncSession, llm_service: LLMService):
        self.session = session
        self.llm = llm_service

    async def build_context(self, project_id: uuid.UUID, limit: int = MAX_CONTEXT_CHARS) -> str:
        """Concatenate current chunks, core documents first, up to ``limit`` characters."""
        result = await self.session.execute(
            select(RepoFile.path, RepoFileChunk.content)
            .join(RepoFileChunk, RepoFileChunk.repo_file_id == RepoFile.id)
            .where(
                RepoFile.project_id == project_id,
                RepoFile.is_current.is_(True),
                RepoFileChunk.is_current.is_(True),
            )
            .order_by(RepoFile.path, RepoFileChunk.chunk_index)
        )
        rows = sorted(result.all(), key=lambda row: not is_core_document(row.path))

        parts: list[str] = []
        used = 0
        for index, row in enumerate(rows, start=1):
            block = f"[{index}] {row.path}\n{row.content}"
            if used + len(block) > limit:
                break
            parts.append(block)
            used += len(block)
        return "\n\n".join(parts)

    async def analyze(
        self,
        project_id: uuid.UUID,
        project_name: str,
        tracker: ProgressTracker | None = None,
    ) -> ProjectAnalysis:
        """Run the four review steps and upsert the analysis row."""
        context = await self.build_context(project_id)
        if not context:
            logger.warning(f"No current chunks for project {project_id}; analysis uses empty context")

        idea = await self.llm.generate(IDEA_PROMPT.format(context=context), system_prompt=SYSTEM_PROMPT)
        await self._step(tracker, 1)

        tech = await self.llm.generate(TECH_PROMPT.format(context=context), system_prompt=SYSTEM_PROMPT)
        await self._step(tracker, 2)

        patterns = await self.llm.generate(
            PATTERNS_PROMPT.format(idea=idea[:1000], tech=tech[:1000], context=context),
            system_prompt=SYSTEM_PROMPT,
        )
        await self._step(tracker, 3)

        try:
            overview = await self.llm.generate(
                OVERVIEW_PROMPT.format(context=context), max_tokens=600, system_prompt=SYSTEM_PROMPT
            )
        except Exception as e:
            logger.error(f"Overview generation failed for project {project_id}: {e}")
            overview = ""
        overview = overview or f"{project_name} is a project under active development."
        await self._step(tracker, 4)

        analysis = await self._get_or_create(project_id)
        analysis.idea_review = idea
        analysis.tech_review = tech
        analysis.patterns_review = patterns
        analysis.overview = overview
        analysis.updated_at = utc_now()
        await self.session.commit()

        logger.info(f"Analysis completed for project {project_id}")
        return analysis

    async def generate_release_note(self, project_id: uuid.UUID, messages: list[str]) -> str | None:
        """Summarize commit messages into a release note and store it."""
        messages = [m.strip() for m in messages if m and m.strip()]
        if not messages:
            return None

        note = await self.llm.generate(
            RELEASE_NOTE_PROMPT.format(messages="\n".join(f"- {m}" for m in messages)),
            max_tokens=500,
            system_prompt=SYSTEM_PROMPT,
        )
        analysis = await self._get_or_create(project_id)
        analysis.latest_release_note = note
        await self.session.commit()
        return note

    async def should_refresh(self, project_id: uuid.UUID, changed_paths: Iterable[str]) -> bool:
        """Refresh when a core document changed, or when stale and anything changed."""
        changed = list(changed_paths)
        if not changed:
            return False
        if any(is_core_document(path) for path in changed):
            return True

        updated_at = await self.session.scalar(
            select(ProjectAnalysis.updated_at).where(ProjectAnalysis.project_id == project_id)
        )
        if updated_at is None:
            return True
        stale_after = timedelta(minutes=settings.analysis_stale_after_minutes)
        return utc_now() - updated_at > stale_after

    async def _get_or_create(self, project_id: uuid.UUID) -> ProjectAnalysis:
        analysis = await self.session.scalar(
            select(ProjectAnalysis).where(ProjectAnalysis.project_id == project_id)
        )
        if analysis is None:
            analysis = ProjectAnalysis(project_id=project_id)
            self.session.add(analysis)
        return analysis

    async def _step(self, tracker: ProgressTracker | None, done: int) -> None:
        if tracker is not None:
            tracker.set_review(done, REVIEW_STEPS)
            await tracker.flush()
