"""Push event processing: commit history, delta sync and analysis dispatch."""

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.core.logging import get_logger
from docsync.exceptions import SyncError
from docsync.models.commit import CommitRecord
from docsync.models.ingestion import RunPhase, SyncTrigger
from docsync.models.project import Project
from docsync.models.webhook import WebhookDelivery, WebhookJob, WebhookJobStatus
from docsync.services.analysis_service import AnalysisService
from docsync.services.github_service import CommitInfo, parse_timestamp
from docsync.services.progress_service import ProgressTracker
from docsync.services.sync_service import Reconciler, resolve_push_delta

if TYPE_CHECKING:
    from docsync.runtime import Services

logger = get_logger(__name__)
settings = get_settings()

DELIVERY_PROCESSING = "processing"
DELIVERY_DONE = "done"
DELIVERY_ERROR = "error"


def commit_rows(project_id: uuid.UUID, event: dict[str, Any]) -> list[dict[str, Any]]:
    """Commit history rows for the commits carried in a push payload."""
    rows = []
    for commit in event.get("commits") or []:
        if not commit.get("id"):
            continue
        author = commit.get("author") or {}
        rows.append(
            {
                "id": uuid.uuid4(),
                "project_id": project_id,
                "sha": commit["id"],
                "message": commit.get("message") or "",
                "author_name": author.get("name"),
                "author_email": author.get("email"),
                "author_login": author.get("username"),
                "committed_at": parse_timestamp(commit.get("timestamp")),
                "url": commit.get("url"),
            }
        )
    return rows


def commit_info_rows(project_id: uuid.UUID, commits: list[CommitInfo]) -> list[dict[str, Any]]:
    """Commit history rows for commits listed through the GitHub API."""
    return [
        {
            "id": uuid.uuid4(),
            "project_id": project_id,
            "sha": commit.sha,
            "message": commit.message or "",
            "author_name": commit.author_name,
            "author_email": commit.author_email,
            "author_login": commit.author_login,
            "committed_at": commit.committed_at,
            "url": commit.url,
        }
        for commit in commits
    ]


async def upsert_commits(session: AsyncSession, project_id: uuid.UUID, event: dict[str, Any]) -> int:
    """Insert the commits of a push payload, ignoring shas already stored."""
    return await insert_commit_rows(session, commit_rows(project_id, event))


async def insert_commit_rows(session: AsyncSession, rows: list[dict[str, Any]]) -> int:
    """Insert commit records, ignoring shas already stored for the project."""
    if not rows:
        return 0

    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    stmt = (
        insert(CommitRecord)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["project_id", "sha"])
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


class WebhookProcessor:
    """Applies one push event to a project under the repository lock."""

    def __init__(self, services: "Services"):
        self.services = services

    async def process_push(
        self,
        project_id: uuid.UUID,
        event: dict[str, Any],
        run_id: uuid.UUID | None = None,
        delivery_id: str | None = None,
    ) -> dict[str, Any]:
        """Sync the files changed by a push.

        Raises on unrecoverable errors after marking the run failed; the
        repository lock is always released.
        """
        services = self.services
        log = logger.bind(project_id=project_id, delivery_id=delivery_id)

        async with services.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise SyncError("Project not found", project_id=project_id)
            repo = project.ref()

            inserted = await upsert_commits(session, repo.id, event)
            if inserted:
                log.info(f"Recorded {inserted} new commits")

            lease = timedelta(minutes=settings.webhook_lock_minutes)
            async with services.locks.held(
                repo.lock_name,
                lease,
                attempts=settings.lock_claim_attempts,
                retry_delay=settings.lock_retry_delay,
            ) as claim:
                if claim.forced:
                    log.warning(f"Took over lock {repo.lock_name}")

                tracker = ProgressTracker(session)
                await tracker.start(repo.id, SyncTrigger.WEBHOOK, run_id)
                log = log.bind(run_id=tracker.run_id)

                try:
                    delta = await resolve_push_delta(services.github, repo, event)
                    tracker.set_total(len(delta.upserts))
                    log.info(
                        f"Push delta: {len(delta.upserts)} upserts, {len(delta.removals)} removals"
                    )

                    await tracker.transition(RunPhase.EMBEDDING)
                    reconciler = Reconciler(
                        session, services.github, services.store, services.embedder
                    )
                    result = await reconciler.apply(repo, delta, tracker, ref=event.get("after"))

                    await tracker.transition(RunPhase.REVIEW)
                    dispatched = await self._maybe_dispatch_analysis(
                        session, repo.id, result.changed_paths, event
                    )

                    await tracker.complete()
                except Exception as e:
                    await tracker.fail(e)
                    raise

        return {
            "run_id": str(tracker.run_id),
            "upserts": delta.upserts,
            "removals": delta.removals,
            "result": result.to_dict(),
            "analysis_dispatched": dispatched,
            "lock_forced": claim.forced,
        }

    async def _maybe_dispatch_analysis(
        self,
        session: AsyncSession,
        project_id: uuid.UUID,
        changed_paths: list[str],
        event: dict[str, Any],
    ) -> bool:
        dispatch = self.services.dispatch_analysis
        if dispatch is None:
            return False

        refresh = await AnalysisService(session, self.services.llm).should_refresh(
            project_id, changed_paths
        )
        if not refresh:
            return False
        messages = [c.get("message", "") for c in event.get("commits") or []]

        try:
            dispatch(project_id, refresh, messages)
        except Exception as e:
            logger.warning(f"Analysis dispatch failed for project {project_id}: {e}")
            return False
        return True


async def register_delivery(
    session: AsyncSession,
    delivery_id: str,
    event: str,
    project_id: uuid.UUID | None = None,
) -> bool:
    """Record a delivery id. Returns False if it is a duplicate.

    A delivery counts as a duplicate once it is ``done`` or while its job is
    still queued. A redelivery of one that ended in ``error``, or that was
    registered but never queued, is accepted again.
    """
    existing = await session.get(WebhookDelivery, delivery_id)
    if existing is None:
        session.add(WebhookDelivery(delivery_id=delivery_id, event=event, project_id=project_id))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    if existing.status == DELIVERY_DONE:
        return False
    if existing.status == DELIVERY_PROCESSING:
        job_status = await session.scalar(
            select(WebhookJob.status).where(WebhookJob.delivery_id == delivery_id)
        )
        if job_status in (WebhookJobStatus.PENDING.value, WebhookJobStatus.RUNNING.value):
            return False

    result = await session.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.delivery_id == delivery_id,
            WebhookDelivery.status == existing.status,
        )
        .values(status=DELIVERY_PROCESSING, error=None, processed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        # Another request re-admitted it first
        return False
    logger.info(f"Redelivery {delivery_id} accepted after status {existing.status}")
    return True


async def mark_delivery(
    session: AsyncSession,
    delivery_id: str | None,
    status: str,
    error: dict[str, Any] | None = None,
) -> None:
    if not delivery_id:
        return
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.delivery_id == delivery_id)
        .values(status=status, error=error, processed_at=utc_now())
    )
    await session.commit()
