"""Server-sent event stream of a project's latest run progress."""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsync.config import get_settings
from docsync.services.progress_service import ProgressService

logger = logging.getLogger(__name__)
settings = get_settings()

HEARTBEAT = ": heartbeat\n\n"


def format_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def read_progress(
    session_factory: async_sessionmaker[AsyncSession],
    project_id: uuid.UUID,
) -> dict[str, Any] | None:
    """Latest run state read with a short-lived session."""
    async with session_factory() as session:
        run = await ProgressService(session).snapshot(project_id)
        if run is None:
            return None
        return {
            "run_id": str(run.id),
            "phase": run.phase,
            "status": run.status,
            "terminal": run.is_terminal,
            "counters": run.progress.as_counters() if run.progress else None,
        }


async def progress_events(
    session_factory: async_sessionmaker[AsyncSession],
    project_id: uuid.UUID,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    max_seconds: float | None = None,
    poll_seconds: float | None = None,
    heartbeat_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[str]:
    """Yield SSE frames until the run is terminal, the deadline passes or the client leaves.

    Emits ``ready`` first, then ``phase`` and ``counters`` whenever they
    change, heartbeat comments in between, and ``done`` once the run has
    finished.
    """
    max_seconds = settings.stream_max_seconds if max_seconds is None else max_seconds
    poll_seconds = settings.stream_poll_seconds if poll_seconds is None else poll_seconds
    heartbeat_seconds = (
        settings.stream_heartbeat_seconds if heartbeat_seconds is None else heartbeat_seconds
    )

    started = clock()
    last_heartbeat = started
    last_phase: dict[str, Any] | None = None
    last_counters: dict[str, int] | None = None

    yield format_event("ready", {"project_id": str(project_id)})

    while True:
        if is_disconnected is not None and await is_disconnected():
            logger.debug(f"Progress stream client left for project {project_id}")
            break

        try:
            state = await read_progress(session_factory, project_id)
        except Exception as e:
            logger.error(f"Progress poll failed for project {project_id}: {e}")
            state = None

        if state is not None:
            phase = {"phase": state["phase"], "status": state["status"]}
            if phase != last_phase:
                last_phase = phase
                yield format_event("phase", phase)

            counters = state["counters"]
            if counters is not None and counters != last_counters:
                last_counters = counters
                yield format_event("counters", counters)

            if state["terminal"]:
                yield format_event("done", phase)
                break

        now = clock()
        if now - started >= max_seconds:
            break
        if now - last_heartbeat >= heartbeat_seconds:
            last_heartbeat = now
            yield HEARTBEAT

        await asyncio.sleep(poll_seconds)
