"""Job lock model - a named, time-bounded lease."""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from docsync.core.clock import utc_now
from docsync.database import Base


class JobLock(Base):
    """Lease row; any holder may take over once ``expires_at`` has passed."""

    __tablename__ = "job_locks"

    job_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now()
    )
