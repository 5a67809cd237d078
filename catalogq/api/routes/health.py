from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from catalogq.core.config import get_settings
from catalogq.db.session import get_session_factory
from catalogq.jobs.service import JobStore

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(request: Request) -> dict[str, object]:
    settings = get_settings()
    reaper = getattr(request.app.state, "reaper", None)
    store = JobStore(settings=settings, session_factory=get_session_factory())
    return {
        "status": "ok",
        "service": settings.app_name,
        "timestamp": datetime.now(tz=timezone.utc),
        "worker_api_enabled": settings.worker_api_enabled,
        "reaper_running": reaper is not None and reaper.running,
        "stale_timeout_seconds": settings.job_stale_timeout_seconds,
        "pending_jobs": store.pending_count(),
    }
