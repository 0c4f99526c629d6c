"""Project routes: import, rescan, listing, commits, webhooks and lock administration."""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import select

from docsync.api.deps import AppServices, DbSession, TriggerAuth
from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.exceptions import SyncError
from docsync.models.commit import CommitRecord
from docsync.models.ingestion import SyncTrigger
from docsync.models.project import Project, lock_name_for, repo_url_for
from docsync.models.repo_file import RepoFile
from docsync.schemas.progress import LockListResponse, LockResetRequest, LockResponse
from docsync.schemas.repository import (
    CommitListResponse,
    CommitResponse,
    CommitSyncResponse,
    FileContentResponse,
    ProjectImportRequest,
    ProjectListResponse,
    ProjectResponse,
    RepoFileListResponse,
    RepoFileResponse,
    ScanStartedResponse,
    WebhookCreatedResponse,
    WebhookInfo,
    WebhookStatusResponse,
)
from docsync.services.lock_service import lock_state
from docsync.services.progress_service import ProgressService
from docsync.services.webhook_service import commit_info_rows, insert_commit_rows
from docsync.tasks.scan_repo import scan_repository

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()


def dispatch_scan(project_id: UUID, run_id: UUID, trigger: SyncTrigger) -> bool:
    """Queue the scan task. If the broker is unreachable the scan worker picks the run up."""
    try:
        scan_repository.delay(str(project_id), str(run_id), trigger.value)
    except Exception as e:
        logger.warning(f"Could not queue scan for run {run_id}, leaving it for the scan worker: {e}")
        return False
    return True


def webhook_url() -> str:
    return f"{settings.app_url.rstrip('/')}/webhooks/github"


def webhook_info(hook: dict) -> WebhookInfo:
    return WebhookInfo(
        id=hook["id"],
        url=(hook.get("config") or {}).get("url"),
        active=bool(hook.get("active")),
        events=list(hook.get("events") or []),
    )


async def get_project_or_404(db, project_id: UUID) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found",
        )
    return project


# =========================================================================
# Locks (declared before /{project_id} routes)
# =========================================================================


@router.get("/locks", response_model=LockListResponse, dependencies=[TriggerAuth])
async def list_locks(services: AppServices, prefix: str | None = None):
    """List job locks and whether each lease is still valid."""
    now = utc_now()
    locks = await services.locks.list_locks(prefix)
    return LockListResponse(
        locks=[
            LockResponse(
                job_name=lock.job_name,
                expires_at=lock.expires_at,
                acquired_at=lock.acquired_at,
                state=lock_state(now, lock.expires_at).value,
            )
            for lock in locks
        ]
    )


@router.post("/locks/reset", dependencies=[TriggerAuth])
async def reset_locks(request: LockResetRequest, services: AppServices):
    """Force-release locks, regardless of who holds them."""
    names = list(request.job_names)
    if request.prefix:
        names.extend(lock.job_name for lock in await services.locks.list_locks(request.prefix))
    names = list(dict.fromkeys(names))

    for name in names:
        await services.locks.force_acquire(name, timedelta(0))
    purged = await services.locks.purge_expired()

    logger.warning(f"Reset {len(names)} locks: {names}")
    return {"status": "ok", "released": names, "purged": purged}


# =========================================================================
# Import / Rescan
# =========================================================================


@router.post(
    "/import",
    response_model=ScanStartedResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[TriggerAuth],
)
async def import_project(request: ProjectImportRequest, db: DbSession, services: AppServices):
    """Register a repository and start its initial scan."""
    repo_url = repo_url_for(request.repo_owner, request.repo_name)
    existing = await db.scalar(select(Project).where(Project.repo_url == repo_url))
    if existing:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Project already imported", "project_id": str(existing.id)},
        )

    repo = await services.github.get_repository(request.repo_owner, request.repo_name)

    webhook_id = None
    if settings.github_webhook_secret:
        try:
            webhook_id = await services.github.create_webhook(
                request.repo_owner,
                request.repo_name,
                webhook_url(),
                settings.github_webhook_secret,
            )
        except SyncError as e:
            # Continue without webhook; the sanity check keeps the project in sync
            logger.warning(f"Webhook creation failed for {repo.full_name}: {e}")

    project = Project(
        repo_owner=request.repo_owner,
        repo_name=request.repo_name,
        repo_url=repo_url,
        default_branch=repo.default_branch,
        webhook_id=webhook_id,
    )
    db.add(project)
    await db.flush()

    run = await ProgressService(db).create_pending_run(project.id, SyncTrigger.IMPORT)
    queued = dispatch_scan(project.id, run.id, SyncTrigger.IMPORT)

    logger.info(f"Imported {repo.full_name} as project {project.id}")
    return ScanStartedResponse(
        project_id=project.id,
        run_id=run.id,
        status="queued" if queued else "pending",
        message="Project imported. Initial scan started.",
    )


@router.post("/{project_id}/rescan", response_model=ScanStartedResponse, dependencies=[TriggerAuth])
async def rescan_project(
    project_id: UUID,
    db: DbSession,
    services: AppServices,
    force: bool = Query(default=False),
):
    """Start a full rescan.

    Without ``force`` an active run is returned instead of starting a new
    one. With ``force`` active runs are failed and the repository lock is
    released first.
    """
    project = await get_project_or_404(db, project_id)
    progress = ProgressService(db)

    active = await progress.active_run(project.id)
    if active is not None and not force:
        return ScanStartedResponse(
            project_id=project.id,
            run_id=active.id,
            status="already_running",
            message="A sync run is already in progress",
        )

    if force:
        failed = await progress.fail_active_runs(project.id, "Superseded by forced rescan")
        await services.locks.force_acquire(lock_name_for(project.repo_owner, project.repo_name), timedelta(0))
        logger.warning(f"Forced rescan of {project.full_name}: failed {failed} active runs")

    run = await progress.create_pending_run(project.id, SyncTrigger.RESCAN)
    queued = dispatch_scan(project.id, run.id, SyncTrigger.RESCAN)
    return ScanStartedResponse(
        project_id=project.id,
        run_id=run.id,
        status="queued" if queued else "pending",
    )


# =========================================================================
# Read endpoints
# =========================================================================


@router.get("", response_model=ProjectListResponse)
async def list_projects(db: DbSession):
    """List all tracked projects."""
    result = await db.execute(select(Project).order_by(Project.created_at.desc()))
    projects = result.scalars().all()
    return ProjectListResponse(
        projects=[ProjectResponse.model_validate(p) for p in projects],
        total=len(projects),
    )


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: UUID, db: DbSession):
    project = await get_project_or_404(db, project_id)
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}/files", response_model=RepoFileListResponse)
async def list_files(project_id: UUID, db: DbSession):
    """List current file versions."""
    await get_project_or_404(db, project_id)
    result = await db.execute(
        select(RepoFile)
        .where(RepoFile.project_id == project_id, RepoFile.is_current.is_(True))
        .order_by(RepoFile.path)
    )
    files = result.scalars().all()
    return RepoFileListResponse(
        files=[RepoFileResponse.model_validate(f) for f in files],
        total=len(files),
    )


@router.get("/{project_id}/files/{file_id}/content", response_model=FileContentResponse)
async def get_file_content(project_id: UUID, file_id: UUID, db: DbSession, services: AppServices):
    """Return the stored content of a file version."""
    repo_file = await db.get(RepoFile, file_id)
    if repo_file is None or repo_file.project_id != project_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    content = await services.store.get(repo_file.bucket_path) if repo_file.bucket_path else None
    if content is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File content not stored")
    return FileContentResponse(id=repo_file.id, path=repo_file.path, sha=repo_file.sha, content=content)


# =========================================================================
# Commit history
# =========================================================================


@router.get("/{project_id}/commits", response_model=CommitListResponse)
async def list_commits(project_id: UUID, db: DbSession, limit: int = Query(default=30, ge=1, le=100)):
    """List recorded commits, newest first."""
    await get_project_or_404(db, project_id)
    result = await db.execute(
        select(CommitRecord)
        .where(CommitRecord.project_id == project_id)
        .order_by(CommitRecord.committed_at.desc(), CommitRecord.created_at.desc())
        .limit(limit)
    )
    commits = result.scalars().all()
    return CommitListResponse(
        commits=[CommitResponse.model_validate(c) for c in commits],
        total=len(commits),
    )


@router.post("/{project_id}/commits/sync", response_model=CommitSyncResponse, dependencies=[TriggerAuth])
async def sync_commits(
    project_id: UUID,
    db: DbSession,
    services: AppServices,
    per_page: int = Query(default=100, ge=1, le=100),
):
    """Backfill commit history from GitHub. Shas already recorded are kept."""
    project = await get_project_or_404(db, project_id)
    commits = await services.github.list_commits(
        project.repo_owner, project.repo_name, branch=project.default_branch, per_page=per_page
    )
    saved = await insert_commit_rows(db, commit_info_rows(project.id, commits))
    logger.info(f"Synced commits for {project.full_name}: {saved} new of {len(commits)}")
    return CommitSyncResponse(total=len(commits), saved=saved)


# =========================================================================
# Webhook administration
# =========================================================================


@router.get("/{project_id}/webhook-status", response_model=WebhookStatusResponse, dependencies=[TriggerAuth])
async def webhook_status(project_id: UUID, db: DbSession, services: AppServices):
    """Check whether GitHub still has the push webhook for this project."""
    project = await get_project_or_404(db, project_id)
    hooks = [
        webhook_info(hook)
        for hook in await services.github.list_webhooks(project.repo_owner, project.repo_name)
    ]
    expected = webhook_url()
    id_matches = project.webhook_id is not None and any(h.id == project.webhook_id for h in hooks)
    url_matches = any(h.url == expected for h in hooks)
    return WebhookStatusResponse(
        project_id=project.id,
        webhook_id=project.webhook_id,
        expected_url=expected,
        webhooks=hooks,
        id_matches=id_matches,
        url_matches=url_matches,
        is_configured=id_matches or url_matches,
    )


@router.post(
    "/{project_id}/create-webhook",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[TriggerAuth],
)
async def create_webhook(
    project_id: UUID,
    db: DbSession,
    services: AppServices,
    replace: bool = Query(default=False),
):
    """Register the push webhook.

    A project that already has a webhook id gets 409 unless ``replace`` is
    set, in which case hooks pointing at this service are deleted first.
    """
    project = await get_project_or_404(db, project_id)
    if not settings.github_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="GITHUB_WEBHOOK_SECRET is not configured",
        )
    if project.webhook_id is not None and not replace:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Webhook already registered", "webhook_id": project.webhook_id},
        )

    url = webhook_url()
    replaced = []
    if replace:
        for hook in await services.github.list_webhooks(project.repo_owner, project.repo_name):
            info = webhook_info(hook)
            if info.id == project.webhook_id or info.url == url:
                await services.github.delete_webhook(project.repo_owner, project.repo_name, info.id)
                replaced.append(info.id)

    hook_id = await services.github.create_webhook(
        project.repo_owner, project.repo_name, url, settings.github_webhook_secret
    )
    project.webhook_id = hook_id
    await db.commit()

    logger.info(f"Registered webhook {hook_id} for {project.full_name} (replaced {replaced})")
    return WebhookCreatedResponse(project_id=project.id, webhook_id=hook_id, url=url, replaced=replaced)
