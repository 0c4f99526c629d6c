"""Lease-based job locks stored in the ``job_locks`` table.

A lock is a row keyed by name with an expiry. Holders that crash simply let
the lease lapse; the next claimant deletes the expired row and inserts its
own. Every operation runs in its own short transaction so lock state is
visible to other workers immediately.
"""

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.core.clock import utc_now
from docsync.exceptions import LockContentionError
from docsync.models.job_lock import JobLock

logger = logging.getLogger(__name__)

SANITY_CHECK_LOCK = "cron:sanity-check"


class LockState(str, enum.Enum):
    UNLOCKED = "unlocked"
    LEASED = "leased"
    EXPIRED = "expired"


def lock_state(now: datetime, expires_at: datetime | None) -> LockState:
    if expires_at is None:
        return LockState.UNLOCKED
    return LockState.LEASED if expires_at > now else LockState.EXPIRED


def is_lock_valid(now: datetime, expires_at: datetime | None) -> bool:
    """A lease is valid strictly before its expiry."""
    return lock_state(now, expires_at) is LockState.LEASED


@dataclass(frozen=True)
class LockClaim:
    """Outcome of :meth:`JobLockManager.claim`.

    ``protected`` is False only when the forced takeover itself failed and
    the caller proceeds without a lock row.
    """

    acquired: bool
    forced: bool = False
    protected: bool = True


class JobLockManager:
    """Acquire, take over and release named leases."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def acquire(self, name: str, lease: timedelta) -> bool:
        """Insert the lock row, clearing it first if it has expired.

        Returns False if a live lease is held by someone else.
        """
        now = utc_now()
        async with self.session_factory() as session:
            await session.execute(
                delete(JobLock).where(JobLock.job_name == name, JobLock.expires_at <= now)
            )
            session.add(JobLock(job_name=name, expires_at=now + lease, acquired_at=now))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def force_acquire(self, name: str, lease: timedelta) -> bool:
        """Overwrite the lock row regardless of its current holder.

        ``force_acquire(name, timedelta(0))`` releases a lock owned by anyone.
        """
        now = utc_now()
        async with self.session_factory() as session:
            await session.merge(JobLock(job_name=name, expires_at=now + lease, acquired_at=now))
            await session.commit()
        return True

    async def release(self, name: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(JobLock).where(JobLock.job_name == name))
            await session.commit()

    async def purge_expired(self, name: str | None = None) -> int:
        """Delete expired locks (all of them, or only ``name``)."""
        stmt = delete(JobLock).where(JobLock.expires_at <= utc_now())
        if name is not None:
            stmt = stmt.where(JobLock.job_name == name)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def claim(
        self,
        name: str,
        lease: timedelta,
        attempts: int = 3,
        retry_delay: float = 0.2,
        allow_force: bool = True,
    ) -> LockClaim:
        """Claim ``name``: retry a normal acquire, then fall back to a takeover.

        Lock-table errors during normal attempts count as "not claimed". If
        the forced takeover fails too, the caller proceeds unprotected.
        """
        try:
            await self.purge_expired(name)
        except SQLAlchemyError as e:
            logger.warning(f"Could not purge expired lock {name}: {e}")

        for attempt in range(1, attempts + 1):
            try:
                if await self.acquire(name, lease):
                    return LockClaim(acquired=True)
            except SQLAlchemyError as e:
                logger.warning(f"Lock acquire error for {name} (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await asyncio.sleep(retry_delay)

        if not allow_force:
            logger.info(f"Lock {name} is busy; not forcing")
            return LockClaim(acquired=False)

        logger.warning(f"Lock {name} still held after {attempts} attempts; forcing takeover")
        try:
            await self.force_acquire(name, lease)
        except SQLAlchemyError as e:
            logger.error(f"Forced takeover of {name} failed, continuing without lock: {e}")
            return LockClaim(acquired=True, forced=True, protected=False)
        return LockClaim(acquired=True, forced=True)

    @asynccontextmanager
    async def held(
        self,
        name: str,
        lease: timedelta,
        attempts: int = 3,
        retry_delay: float = 0.2,
        allow_force: bool = True,
    ) -> AsyncIterator[LockClaim]:
        """Hold ``name`` for the duration of the block; always released."""
        claim = await self.claim(name, lease, attempts, retry_delay, allow_force)
        if not claim.acquired:
            raise LockContentionError(f"Lock {name} is held by another job", lock=name)
        try:
            yield claim
        finally:
            try:
                await self.release(name)
            except SQLAlchemyError as e:
                logger.error(f"Failed to release lock {name}: {e}")

    async def list_locks(self, prefix: str | None = None) -> list[JobLock]:
        stmt = select(JobLock).order_by(JobLock.job_name)
        if prefix:
            stmt = stmt.where(JobLock.job_name.startswith(prefix))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
