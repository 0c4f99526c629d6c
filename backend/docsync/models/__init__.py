"""SQLAlchemy models."""

from docsync.models.project import Project
from docsync.models.repo_file import RepoFile, RepoFileChunk
from docsync.models.ingestion import IngestionRun, ScanProgress
from docsync.models.job_lock import JobLock
from docsync.models.webhook import WebhookDelivery, WebhookJob
from docsync.models.commit import CommitRecord
from docsync.models.analysis import ProjectAnalysis

__all__ = [
    "Project",
    "RepoFile",
    "RepoFileChunk",
    "IngestionRun",
    "ScanProgress",
    "JobLock",
    "WebhookJob",
    "WebhookDelivery",
    "CommitRecord",
    "ProjectAnalysis",
]
