from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from catalogq.api.routes.catalog import router as catalog_router
from catalogq.api.routes.health import router as health_router
from catalogq.api.routes.worker import router as worker_router
from catalogq.core.config import get_settings
from catalogq.core.logging import configure_logging
from catalogq.db.init_db import initialize_database
from catalogq.db.session import get_session_factory
from catalogq.jobs.reaper import StaleJobReaper
from catalogq.jobs.service import JobStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    reaper: StaleJobReaper | None = None
    if settings.reaper_enabled:
        store = JobStore(settings=settings, session_factory=get_session_factory())
        reaper = StaleJobReaper(
            store,
            interval_seconds=settings.reaper_interval_seconds,
            timeout_seconds=settings.job_stale_timeout_seconds,
        )
        reaper.start()
    app.state.reaper = reaper
    try:
        yield
    finally:
        if reaper is not None:
            reaper.stop(timeout=5.0)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(worker_router, prefix="/api/v1")
    app.include_router(catalog_router, prefix="/api/v1")
    return app
