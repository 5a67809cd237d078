from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from catalogq.api.auth import require_worker_auth
from catalogq.api.schemas.worker import (
    AckEnvelope,
    ClaimEnvelope,
    ClaimJobRequest,
    JobCompleteRequest,
    JobFailRequest,
    JobHeartbeatRequest,
    JobProgressRequest,
    ManagerStatusResponse,
    QueueStatsResponse,
    WorkerClaimResponse,
)
from catalogq.core.config import get_settings
from catalogq.db.session import get_session_factory
from catalogq.jobs.service import InvalidJobResultError, JobStore, claim_to_dict, stats_to_dict

router = APIRouter(prefix="/worker", tags=["worker"], dependencies=[Depends(require_worker_auth)])


def get_job_store() -> JobStore:
    return JobStore(settings=get_settings(), session_factory=get_session_factory())


def _ack_or_reject(accepted: bool, job_id: int) -> AckEnvelope:
    if not accepted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found or not owned by this worker",
        )
    return AckEnvelope.model_validate({"data": {"ok": True}})


@router.post("/jobs/claim", response_model=ClaimEnvelope)
def claim_job(request: ClaimJobRequest, store: JobStore = Depends(get_job_store)) -> ClaimEnvelope:
    try:
        claim = store.claim_next(request.worker_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if claim is None:
        return ClaimEnvelope(data=None)
    return ClaimEnvelope(data=WorkerClaimResponse.model_validate(claim_to_dict(claim)))


@router.put("/jobs/{job_id}/progress", response_model=AckEnvelope)
def report_progress(job_id: int, request: JobProgressRequest, store: JobStore = Depends(get_job_store)) -> AckEnvelope:
    try:
        accepted = store.report_progress(job_id, request.worker_id, stage=request.stage)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _ack_or_reject(accepted, job_id)


@router.put("/jobs/{job_id}/heartbeat", response_model=AckEnvelope)
def heartbeat_job(job_id: int, request: JobHeartbeatRequest, store: JobStore = Depends(get_job_store)) -> AckEnvelope:
    try:
        accepted = store.heartbeat(job_id, request.worker_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _ack_or_reject(accepted, job_id)


@router.put("/jobs/{job_id}/complete", response_model=AckEnvelope)
def complete_job(job_id: int, request: JobCompleteRequest, store: JobStore = Depends(get_job_store)) -> AckEnvelope:
    try:
        accepted = store.complete(job_id, request.worker_id, request.result.to_result())
    except (InvalidJobResultError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _ack_or_reject(accepted, job_id)


@router.put("/jobs/{job_id}/fail", response_model=AckEnvelope)
def fail_job(job_id: int, request: JobFailRequest, store: JobStore = Depends(get_job_store)) -> AckEnvelope:
    try:
        accepted = store.fail(job_id, request.worker_id, request.error)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _ack_or_reject(accepted, job_id)


@router.get("/status", response_model=ManagerStatusResponse)
def manager_status(store: JobStore = Depends(get_job_store)) -> ManagerStatusResponse:
    settings = get_settings()
    return ManagerStatusResponse(
        status="ok",
        service=settings.app_name,
        environment=settings.environment,
        timestamp=datetime.now(tz=timezone.utc),
        stale_timeout_seconds=settings.job_stale_timeout_seconds,
        queue=QueueStatsResponse.model_validate(stats_to_dict(store.get_stats())),
    )
