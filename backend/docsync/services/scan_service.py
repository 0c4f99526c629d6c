"""Full-tree scans: import, manual rescan, scan worker and sanity check."""

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from docsync.config import get_settings
from docsync.core.logging import get_logger
from docsync.exceptions import LockContentionError, SyncError
from docsync.models.ingestion import IngestionRun, RunPhase, RunStatus, SyncTrigger
from docsync.models.project import Project, RepoRef
from docsync.services.analysis_service import AnalysisService
from docsync.services.lock_service import SANITY_CHECK_LOCK
from docsync.services.progress_service import ProgressService, ProgressTracker
from docsync.services.sync_service import Reconciler, detect_tree_changes

if TYPE_CHECKING:
    from docsync.runtime import Services

logger = get_logger(__name__)
settings = get_settings()


class ScanService:
    """Reconciles a project's full tree under the repository lock."""

    def __init__(self, services: "Services"):
        self.services = services

    async def run_scan(
        self,
        project_id: uuid.UUID,
        run_id: uuid.UUID | None = None,
        trigger: SyncTrigger = SyncTrigger.IMPORT,
        allow_force: bool | None = None,
    ) -> dict[str, Any]:
        """Run (or resume) a full scan for a project.

        Sanity-check scans, calls with ``allow_force=False`` and runs some
        other worker already moved to running never take a busy lock over;
        they raise :class:`LockContentionError` instead. An abandoned running
        run is resumed once its lease expires. Unrecoverable errors mark the
        run failed and are re-raised.
        """
        services = self.services
        async with services.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise SyncError("Project not found", project_id=project_id, run_id=run_id)
            repo = project.ref()

            if allow_force is None:
                allow_force = trigger is not SyncTrigger.SANITY_CHECK
            if run_id is not None:
                status = await session.scalar(
                    select(IngestionRun.status).where(IngestionRun.id == run_id)
                )
                if status == RunStatus.RUNNING.value:
                    allow_force = False

            async with services.locks.held(
                repo.lock_name,
                timedelta(minutes=settings.scan_lock_minutes),
                attempts=settings.lock_claim_attempts,
                retry_delay=settings.lock_retry_delay,
                allow_force=allow_force,
            ) as claim:
                if claim.forced:
                    logger.warning(
                        f"Took over lock {repo.lock_name}",
                        extra={"context": {"project_id": repo.id}},
                    )
                summary = await self._scan(session, repo, trigger, run_id)

        summary["lock_forced"] = claim.forced
        return summary

    async def _scan(
        self,
        session,
        repo: RepoRef,
        trigger: SyncTrigger,
        run_id: uuid.UUID | None,
    ) -> dict[str, Any]:
        services = self.services
        tracker = ProgressTracker(session)
        await tracker.start(repo.id, trigger, run_id)
        log = logger.bind(project_id=repo.id, run_id=tracker.run_id)

        try:
            tree = await services.github.get_tree(repo.owner, repo.name, repo.default_branch)
            delta, tracked_count = await detect_tree_changes(session, repo, tree)
            tracker.set_total(tracked_count)
            # Files already current count as indexed
            tracker.add_indexed(max(tracked_count - len(delta.upserts), 0))
            await tracker.flush()
            log.info(
                f"Tree scan of {repo.full_name}: {tracked_count} tracked, "
                f"{len(delta.upserts)} to sync, {len(delta.removals)} removed"
            )

            await tracker.transition(RunPhase.EMBEDDING)
            reconciler = Reconciler(session, services.github, services.store, services.embedder)
            result = await reconciler.apply(repo, delta, tracker, ref=repo.default_branch)

            await tracker.transition(RunPhase.REVIEW)
            analysis = AnalysisService(session, services.llm)
            if trigger in (SyncTrigger.IMPORT, SyncTrigger.RESCAN):
                try:
                    await analysis.analyze(repo.id, repo.name, tracker=tracker)
                except Exception as e:
                    await session.rollback()
                    log.error(f"Analysis failed, continuing: {e}")
            elif services.dispatch_analysis is not None:
                if await analysis.should_refresh(repo.id, result.changed_paths):
                    try:
                        services.dispatch_analysis(repo.id, True, [])
                    except Exception as e:
                        log.warning(f"Analysis dispatch failed: {e}")

            await tracker.complete()
        except Exception as e:
            await tracker.fail(e)
            raise

        return {
            "project_id": str(repo.id),
            "run_id": str(tracker.run_id),
            "tracked": tracked_count,
            "result": result.to_dict(),
        }

    async def run_pending(self) -> dict[str, Any] | None:
        """Execute the oldest pending run, if any.

        The worker never takes over a busy repository lock: the run stays
        pending and a later tick (or the queued scan task) picks it up.
        """
        async with self.services.session_factory() as session:
            run = await ProgressService(session).oldest_pending_run()
            if run is None:
                return None
            project_id, run_id, trigger = run.project_id, run.id, SyncTrigger(run.trigger)

        logger.info(f"Scan worker picked run {run_id}", extra={"context": {"project_id": project_id}})
        try:
            return await self.run_scan(project_id, run_id=run_id, trigger=trigger, allow_force=False)
        except LockContentionError:
            logger.info(
                f"Run {run_id} left pending; repository lock is busy",
                extra={"context": {"project_id": project_id}},
            )
            return {"status": "busy", "project_id": str(project_id), "run_id": str(run_id)}

    async def sanity_check(self) -> dict[str, Any]:
        """Full-tree reconciliation of every project.

        Holds the global sanity-check lock for the sweep. Busy repositories
        are skipped; a failing project does not abort the sweep.
        """
        services = self.services
        results: list[dict[str, Any]] = []

        async with services.locks.held(
            SANITY_CHECK_LOCK,
            timedelta(minutes=settings.sanity_lock_minutes),
            attempts=1,
            allow_force=False,
        ):
            async with services.session_factory() as session:
                rows = await session.execute(select(Project.id, Project.repo_owner, Project.repo_name))
                projects = rows.all()

            for project_id, owner, name in projects:
                entry: dict[str, Any] = {"project_id": str(project_id), "repo": f"{owner}/{name}"}
                try:
                    summary = await self.run_scan(project_id, trigger=SyncTrigger.SANITY_CHECK)
                except LockContentionError:
                    entry["status"] = "skipped"
                except Exception as e:
                    entry["status"] = "error"
                    entry["error"] = SyncError.from_exception(e, project_id=project_id).to_dict()
                    logger.error(
                        f"Sanity check failed for {owner}/{name}: {e}",
                        extra={"context": {"project_id": project_id}},
                    )
                else:
                    entry["status"] = "ok"
                    entry["run_id"] = summary["run_id"]
                    entry["result"] = summary["result"]
                results.append(entry)

        checked = sum(1 for r in results if r["status"] == "ok")
        logger.info(f"Sanity check finished: {checked}/{len(results)} projects reconciled")
        return {"projects": results, "checked": checked, "total": len(results)}
