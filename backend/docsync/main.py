"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docsync import __version__
from docsync.api.routes import cron, progress, projects, webhooks
from docsync.config import get_settings
from docsync.core.logging import configure_logging
from docsync.database import init_db
from docsync.exceptions import ErrorKind, SyncError
from docsync.runtime import create_services

logger = logging.getLogger(__name__)
settings = get_settings()

ERROR_STATUS = {
    ErrorKind.LOCK_CONTENTION: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSIENT_EXTERNAL: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    configure_logging(settings.log_level)
    await init_db()
    app.state.services = await create_services()
    yield
    # Shutdown
    await app.state.services.aclose()


app = FastAPI(
    title="DocSync API",
    description="Keeps a searchable, embedded mirror of repository documentation in sync",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


# Include routers
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(projects.router, prefix="/api/projects", tags=["Projects"])
app.include_router(progress.router, prefix="/api/projects", tags=["Progress"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}
