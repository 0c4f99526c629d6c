"""Ingestion run and scan progress models."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docsync.core.clock import utc_now
from docsync.database import Base


class RunPhase(str, enum.Enum):
    INDEXING = "indexing"
    EMBEDDING = "embedding"
    REVIEW = "review"
    DONE = "done"
    FAILED = "failed"


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncTrigger(str, enum.Enum):
    IMPORT = "import"
    RESCAN = "rescan"
    WEBHOOK = "webhook"
    SANITY_CHECK = "sanity_check"


ACTIVE_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)
TERMINAL_STATUSES = (RunStatus.COMPLETED.value, RunStatus.FAILED.value)


class IngestionRun(Base):
    """One synchronization attempt for a project."""

    __tablename__ = "ingestion_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    phase: Mapped[str] = mapped_column(String(20), default=RunPhase.INDEXING.value)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.PENDING.value)
    trigger: Mapped[str] = mapped_column(String(20), default=SyncTrigger.IMPORT.value)
    error: Mapped[dict | None] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)

    progress: Mapped["ScanProgress"] = relationship(
        "ScanProgress",
        back_populates="run",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ScanProgress(Base):
    """Live counters for a run; values only ever increase."""

    __tablename__ = "scan_progress"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ingestion_runs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )

    files_total: Mapped[int] = mapped_column(Integer, default=0)
    files_indexed: Mapped[int] = mapped_column(Integer, default=0)
    chunks_total: Mapped[int] = mapped_column(Integer, default=0)
    review_done: Mapped[int] = mapped_column(Integer, default=0)
    review_total: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )

    run: Mapped["IngestionRun"] = relationship("IngestionRun", back_populates="progress")

    def as_counters(self) -> dict[str, int]:
        return {
            "total": self.files_total or 0,
            "indexed": self.files_indexed or 0,
            "chunks": self.chunks_total or 0,
            "review_done": self.review_done or 0,
            "review_total": self.review_total or 0,
        }
