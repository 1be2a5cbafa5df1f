"""TeamGuard - Main FastAPI Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from teamguard import __version__
from teamguard.api import auth_router, permissions_router, integrations_router
from teamguard.api.errors import register_exception_handlers
from teamguard.config import get_settings
from teamguard.core.logging import RequestLoggingMiddleware, setup_logging
from teamguard.core.maintenance import MaintenanceScheduler
from teamguard.core.startup import validate_startup
from teamguard.database import init_db, close_db

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging(json_output=settings.log_json, level=settings.log_level)
    validate_startup()
    await init_db()

    scheduler = None
    if settings.background_jobs_enabled:
        scheduler = MaintenanceScheduler(settings)
        scheduler.start()

    yield

    # Shutdown
    if scheduler is not None:
        await scheduler.stop()
    await close_db()


app = FastAPI(
    title="TeamGuard",
    description="Identity, authorization and integration credential lifecycle for team management",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)

app.include_router(auth_router)
app.include_router(permissions_router)
app.include_router(integrations_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "TeamGuard",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
