"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from docsync.config import get_settings

settings = get_settings()

celery_app = Celery(
    "docsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "docsync.tasks.scan_repo",
        "docsync.tasks.webhook_jobs",
        "docsync.tasks.maintenance",
        "docsync.tasks.analysis",
    ],
)

# Configuration
celery_app.conf.update(
    # Task execution
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task behavior
    task_track_started=True,
    task_time_limit=3600,  # full scans of large repositories
    task_soft_time_limit=3480,

    # Retry behavior
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Worker configuration
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

# Periodic jobs
celery_app.conf.beat_schedule = {
    "process-webhook-jobs": {
        "task": "docsync.tasks.webhook_jobs.process_webhook_jobs",
        "schedule": 60.0,
    },
    "scan-worker": {
        "task": "docsync.tasks.maintenance.scan_worker",
        "schedule": 60.0,
    },
    "sanity-check": {
        "task": "docsync.tasks.maintenance.sanity_check",
        "schedule": crontab(minute=0, hour=3),
    },
    "cleanup-old-chunks": {
        "task": "docsync.tasks.maintenance.cleanup_old_chunks",
        "schedule": crontab(minute=30, hour=4),
    },
}
