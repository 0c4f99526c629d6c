"""Database engine, session factory and declarative base."""

from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from docsync.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all models."""


def create_engine_from_settings(database_url: str | None = None) -> AsyncEngine:
    """Create an async engine; pool options only apply to server databases."""
    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"timeout": 15})
    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        pool_pre_ping=True,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    """Process-wide engine for the API."""
    return create_engine_from_settings()


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_session_factory()() as session:
        yield session


async def init_db() -> None:
    """Verify connectivity; create tables when auto-create is enabled."""
    # Import models so they register on Base.metadata
    import docsync.models  # noqa: F401

    settings = get_settings()
    engine = get_engine()
    async with engine.begin() as conn:
        if settings.database_auto_create:
            if not settings.is_sqlite:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
        else:
            await conn.execute(text("SELECT 1"))
