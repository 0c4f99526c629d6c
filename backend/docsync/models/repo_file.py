"""Versioned documentation files and their embedded chunks."""

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.database import Base

settings = get_settings()


class RepoFile(Base):
    """One row per path per content version.

    Only one row per (project, path) is current; older versions stay for history.
    """

    __tablename__ = "repo_files"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )

    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    sha: Mapped[str] = mapped_column(String(64), nullable=False)  # Git blob SHA
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    bucket_path: Mapped[str | None] = mapped_column(String(1200))
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "uq_repo_files_current_path",
            "project_id",
            "path",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
        Index("idx_repo_files_project_path", "project_id", "path"),
    )


class RepoFileChunk(Base):
    """Overlapping text window of a file version with its embedding."""

    __tablename__ = "repo_file_chunks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    repo_file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repo_files.id", ondelete="CASCADE"), nullable=False
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=False
    )
    embedding_model: Mapped[str] = mapped_column(String(100), nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now()
    )
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("repo_file_id", "chunk_index", name="uq_chunks_file_index"),
        Index("idx_chunks_current", "repo_file_id", "is_current"),
    )
