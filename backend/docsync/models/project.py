"""Project model - one tracked repository."""

import uuid
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import BigInteger, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from docsync.core.clock import utc_now
from docsync.database import Base


def repo_url_for(owner: str, name: str) -> str:
    """Canonical repository URL used to match webhook payloads."""
    return f"https://github.com/{owner}/{name}"


def lock_name_for(owner: str, name: str) -> str:
    """Job lock shared by every sync trigger for a repository."""
    return f"sync:{owner}/{name}"


class Project(Base):
    """A tracked repository. Identity is immutable after import."""

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Repository identity
    repo_owner: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_url: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    default_branch: Mapped[str] = mapped_column(String(100), default="main")

    # Push webhook registered on the source host (None if creation failed)
    webhook_id: Mapped[int | None] = mapped_column(BigInteger)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now()
    )

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @property
    def lock_name(self) -> str:
        return lock_name_for(self.repo_owner, self.repo_name)

    def ref(self) -> "RepoRef":
        """Detached identity, safe to use after the session rolls back."""
        return RepoRef(self.id, self.repo_owner, self.repo_name, self.default_branch)


class RepoRef(NamedTuple):
    id: uuid.UUID
    owner: str
    name: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def lock_name(self) -> str:
        return lock_name_for(self.owner, self.name)
