"""
Webhook job queue.

Push events are stored as ``webhook_jobs`` rows and drained by a scheduled
worker. Jobs are claimed with SELECT FOR UPDATE SKIP LOCKED so concurrent
workers never take the same job.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.core.logging import get_logger
from docsync.exceptions import QueueExhaustedError, SyncError
from docsync.models.webhook import WebhookJob, WebhookJobStatus
from docsync.services.webhook_service import mark_delivery

logger = get_logger(__name__)
settings = get_settings()


class PushProcessor(Protocol):
    async def process_push(
        self,
        project_id: uuid.UUID,
        event: dict[str, Any],
        run_id: uuid.UUID | None = None,
        delivery_id: str | None = None,
    ) -> dict[str, Any]: ...


@dataclass
class QueueStats:
    """Counts of webhook jobs by status."""

    pending: int = 0
    running: int = 0
    done: int = 0
    error: int = 0
    total: int = 0


@dataclass
class QueueRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    jobs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "jobs": self.jobs,
        }


class WebhookJobQueue:
    """Durable queue of push events with bounded retries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def enqueue(
        self,
        delivery_id: str,
        project_id: uuid.UUID,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> tuple[WebhookJob, bool]:
        """Insert a job keyed by delivery id.

        Returns the job and whether it was (re)queued. A delivery that is
        already queued is returned unchanged; one whose job ended in
        ``error`` is reset to ``pending`` with a fresh retry budget.
        """
        values = {
            "id": uuid.uuid4(),
            "delivery_id": delivery_id,
            "project_id": project_id,
            "payload": payload,
            "status": WebhookJobStatus.PENDING.value,
            "retry_count": 0,
            "max_retries": settings.webhook_job_max_retries if max_retries is None else max_retries,
            "created_at": utc_now(),
        }
        async with self.session_factory() as session:
            dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            result = await session.execute(
                insert(WebhookJob)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["delivery_id"])
            )
            created = bool(result.rowcount)
            if not created:
                rearmed = await session.execute(
                    update(WebhookJob)
                    .where(
                        WebhookJob.delivery_id == delivery_id,
                        WebhookJob.status == WebhookJobStatus.ERROR.value,
                    )
                    .values(
                        status=WebhookJobStatus.PENDING.value,
                        payload=payload,
                        retry_count=0,
                        last_error=None,
                        started_at=None,
                        processed_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                created = bool(rearmed.rowcount)
            await session.commit()

            job = await session.scalar(
                select(WebhookJob).where(WebhookJob.delivery_id == delivery_id)
            )

        if created:
            logger.info(f"Queued webhook job {job.id}", extra={"context": {"delivery_id": delivery_id}})
        else:
            logger.debug(f"Delivery {delivery_id} already queued as {job.id}")
        return job, created

    async def claim_batch(self, limit: int | None = None) -> list[WebhookJob]:
        """Claim up to ``limit`` pending jobs, oldest first, and mark them running."""
        limit = limit or settings.webhook_job_batch_size
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookJob)
                .where(WebhookJob.status == WebhookJobStatus.PENDING.value)
                .order_by(WebhookJob.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            jobs = list(result.scalars().all())

            now = utc_now()
            for job in jobs:
                job.status = WebhookJobStatus.RUNNING.value
                job.started_at = now
            await session.commit()

        return jobs

    async def process_pending(
        self,
        processor: PushProcessor,
        limit: int | None = None,
    ) -> QueueRunResult:
        """Claim a batch and run each job through ``processor``.

        Jobs run one after another; a failure is recorded on the job and
        does not stop the batch.
        """
        result = QueueRunResult()
        jobs = await self.claim_batch(limit)

        for job in jobs:
            result.processed += 1
            log = logger.bind(job_id=job.id, delivery_id=job.delivery_id, project_id=job.project_id)
            try:
                outcome = await processor.process_push(
                    job.project_id, job.payload, delivery_id=job.delivery_id
                )
            except Exception as e:
                exhausted = await self.mark_failed(job, e)
                result.failed += 1
                if exhausted:
                    result.exhausted += 1
                result.jobs.append(
                    {"job_id": str(job.id), "status": "error" if exhausted else "retry"}
                )
                log.error(f"Webhook job failed: {e}")
                continue

            await self.mark_done(job)
            result.succeeded += 1
            result.jobs.append(
                {"job_id": str(job.id), "status": "done", "run_id": outcome.get("run_id")}
            )
            log.info("Webhook job done")

        return result

    async def mark_done(self, job: WebhookJob) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job.id)
                .values(
                    status=WebhookJobStatus.DONE.value,
                    processed_at=utc_now(),
                    last_error=None,
                )
            )
            await session.commit()
            await mark_delivery(session, job.delivery_id, "done")

    async def mark_failed(self, job: WebhookJob, error: BaseException) -> bool:
        """Record a failure. Returns True when the job has run out of retries."""
        retry_count = (job.retry_count or 0) + 1
        max_retries = settings.webhook_job_max_retries if job.max_retries is None else job.max_retries
        exhausted = retry_count >= max_retries
        details = SyncError.from_exception(
            error, job_id=job.id, delivery_id=job.delivery_id, attempt=retry_count
        ).to_dict()

        if exhausted:
            details = QueueExhaustedError(
                f"Webhook job gave up after {retry_count} attempts",
                job_id=job.id,
                delivery_id=job.delivery_id,
                last_error=details,
            ).to_dict()
            values = {
                "status": WebhookJobStatus.ERROR.value,
                "processed_at": utc_now(),
            }
        else:
            values = {"status": WebhookJobStatus.PENDING.value, "started_at": None}

        async with self.session_factory() as session:
            await session.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job.id)
                .values(retry_count=retry_count, last_error=details, **values)
            )
            await session.commit()
            if exhausted:
                await mark_delivery(session, job.delivery_id, "error", details)

        job.retry_count = retry_count
        return exhausted

    async def reset_stale(self, timeout: timedelta | None = None) -> int:
        """Return jobs stuck in ``running`` (crashed workers) to ``pending``."""
        timeout = timeout or timedelta(minutes=settings.webhook_job_stale_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookJob)
                .where(
                    WebhookJob.status == WebhookJobStatus.RUNNING.value,
                    WebhookJob.started_at < utc_now() - timeout,
                )
                .values(status=WebhookJobStatus.PENDING.value, started_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        count = result.rowcount or 0
        if count > 0:
            logger.warning(f"Reset {count} stale webhook jobs")
        return count

    async def stats(self) -> QueueStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookJob.status, func.count(WebhookJob.id)).group_by(WebhookJob.status)
            )
            rows = result.all()

        stats = QueueStats()
        for status, count in rows:
            if hasattr(stats, status):
                setattr(stats, status, count)
            stats.total += count
        return stats
