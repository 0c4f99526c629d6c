"""Shared setup for Celery tasks.

Each task runs its coroutine under ``asyncio.run``, so engines and HTTP
clients are created inside that loop and disposed before it closes.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.config import get_settings
from docsync.core.logging import configure_logging
from docsync.database import create_engine_from_settings
from docsync.runtime import Services, create_services

settings = get_settings()


@asynccontextmanager
async def task_services() -> AsyncIterator[Services]:
    configure_logging(settings.log_level)
    engine = create_engine_from_settings()
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    services = await create_services(session_factory)
    try:
        yield services
    finally:
        await services.aclose()
        await engine.dispose()
