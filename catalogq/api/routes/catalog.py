from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from catalogq.api.schemas.catalog import (
    EnqueueAssetRequest,
    EnqueueAssetResponse,
    ExpireStaleRequest,
    ExpireStaleResponse,
    JobListResponse,
    QueueSpaceRequest,
    QueueSpaceResponse,
)
from catalogq.api.schemas.worker import JobResponse, QueueStatsResponse
from catalogq.core.config import get_settings
from catalogq.db.session import get_session_factory
from catalogq.jobs.enqueuer import Enqueuer
from catalogq.jobs.service import (
    JobNotFoundError,
    JobPolicyError,
    JobStore,
    snapshot_to_dict,
    stats_to_dict,
)

router = APIRouter(prefix="/catalog", tags=["catalog"])


def get_job_store() -> JobStore:
    return JobStore(settings=get_settings(), session_factory=get_session_factory())


def get_enqueuer(store: JobStore = Depends(get_job_store)) -> Enqueuer:
    return Enqueuer(store=store, session_factory=get_session_factory())


@router.post("/spaces/{space_name}/queue", response_model=QueueSpaceResponse)
def queue_space(
    space_name: str,
    request: QueueSpaceRequest | None = None,
    enqueuer: Enqueuer = Depends(get_enqueuer),
) -> QueueSpaceResponse:
    job_kind = (request or QueueSpaceRequest()).job_kind
    queued = enqueuer.queue_jobs_for_space(space_name, job_kind)
    return QueueSpaceResponse(space_name=space_name, job_kind=job_kind.value, queued=queued)


@router.post("/assets/{asset_id}/jobs", response_model=EnqueueAssetResponse)
def enqueue_asset(
    asset_id: int,
    request: EnqueueAssetRequest | None = None,
    enqueuer: Enqueuer = Depends(get_enqueuer),
) -> EnqueueAssetResponse:
    job_kind = (request or EnqueueAssetRequest()).job_kind
    try:
        job = enqueuer.enqueue_asset(asset_id, job_kind)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobPolicyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if job is None:
        return EnqueueAssetResponse(queued=False, job=None)
    return EnqueueAssetResponse(queued=True, job=JobResponse.model_validate(snapshot_to_dict(job)))


@router.get("/assets/{asset_id}/jobs", response_model=JobListResponse)
def list_asset_jobs(asset_id: int, store: JobStore = Depends(get_job_store)) -> JobListResponse:
    items = store.list_jobs_for_asset(asset_id)
    return JobListResponse(items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in items])


@router.get("/jobs/stats", response_model=QueueStatsResponse)
def job_stats(store: JobStore = Depends(get_job_store)) -> QueueStatsResponse:
    return QueueStatsResponse.model_validate(stats_to_dict(store.get_stats()))


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: int, store: JobStore = Depends(get_job_store)) -> JobResponse:
    try:
        job = store.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/jobs/expire-stale", response_model=ExpireStaleResponse)
def expire_stale_jobs(
    request: ExpireStaleRequest | None = None,
    store: JobStore = Depends(get_job_store),
) -> ExpireStaleResponse:
    timeout_seconds = (request.timeout_seconds if request else None) or get_settings().job_stale_timeout_seconds
    return ExpireStaleResponse(expired=store.expire_stale(timeout_seconds))
