"""AI analysis of a project's documentation."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from docsync.core.clock import utc_now
from docsync.database import Base


class ProjectAnalysis(Base):
    """Latest generated reviews; ``updated_at`` drives the staleness check."""

    __tablename__ = "project_analysis"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    idea_review: Mapped[str | None] = mapped_column(Text)
    tech_review: Mapped[str | None] = mapped_column(Text)
    patterns_review: Mapped[str | None] = mapped_column(Text)
    overview: Mapped[str | None] = mapped_column(Text)
    latest_release_note: Mapped[str | None] = mapped_column(Text)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, server_default=func.now()
    )
