"""Project and file schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class ProjectImportRequest(BaseModel):
    """Schema for importing a repository."""

    repo_owner: str = Field(min_length=1)
    repo_name: str = Field(min_length=1)


class ProjectResponse(BaseModel):
    """Project response schema."""

    id: UUID
    repo_owner: str
    repo_name: str
    repo_url: str
    default_branch: str
    webhook_id: int | None
    created_at: datetime

    class Config:
        from_attributes = True


class ProjectListResponse(BaseModel):
    """List of projects response."""

    projects: list[ProjectResponse]
    total: int


class RepoFileResponse(BaseModel):
    """Current file version."""

    id: UUID
    path: str
    sha: str
    size_bytes: int
    bucket_path: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class RepoFileListResponse(BaseModel):
    files: list[RepoFileResponse]
    total: int


class ScanStartedResponse(BaseModel):
    """Returned by import and rescan once the scan is dispatched."""

    project_id: UUID
    run_id: UUID
    status: str
    message: str | None = None


class FileContentResponse(BaseModel):
    """Stored content of a file version."""

    id: UUID
    path: str
    sha: str
    content: str


class CommitResponse(BaseModel):
    """Commit history entry."""

    sha: str
    message: str
    author_name: str | None
    author_email: str | None
    author_login: str | None
    committed_at: datetime | None
    url: str | None

    class Config:
        from_attributes = True


class CommitListResponse(BaseModel):
    commits: list[CommitResponse]
    total: int


class CommitSyncResponse(BaseModel):
    """Result of pulling recent commits from GitHub."""

    total: int
    saved: int


class WebhookInfo(BaseModel):
    id: int
    url: str | None
    active: bool
    events: list[str]


class WebhookStatusResponse(BaseModel):
    """Compares the hooks registered on GitHub with the stored webhook id."""

    project_id: UUID
    webhook_id: int | None
    expected_url: str
    webhooks: list[WebhookInfo]
    id_matches: bool
    url_matches: bool
    is_configured: bool


class WebhookCreatedResponse(BaseModel):
    project_id: UUID
    webhook_id: int
    url: str
    replaced: list[int] = Field(default_factory=list)
