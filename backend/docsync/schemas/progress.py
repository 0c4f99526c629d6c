"""Ingestion progress and lock schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class ProgressCounters(BaseModel):
    total: int = 0
    indexed: int = 0
    chunks: int = 0
    review_done: int = 0
    review_total: int = 0


class RunProgressResponse(BaseModel):
    """Latest run of a project with its counters."""

    run_id: UUID
    phase: str
    status: str
    trigger: str
    counters: ProgressCounters
    error: dict[str, Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class LockResponse(BaseModel):
    job_name: str
    expires_at: datetime
    acquired_at: datetime
    state: str

    class Config:
        from_attributes = True


class LockListResponse(BaseModel):
    locks: list[LockResponse]


class LockResetRequest(BaseModel):
    """Force-release locks by name, or every lock under a prefix."""

    job_names: list[str] = []
    prefix: str | None = None
