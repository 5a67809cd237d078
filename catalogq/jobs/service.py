from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from catalogq.core.config import Settings
from catalogq.db.models import (
    ACTIVE_JOB_STATUSES,
    Asset,
    CatalogJob,
    JobKind,
    JobStatus,
    ProxyStatus,
)
from catalogq.jobs.resolver import SpaceRootResolver, SubjectNotResolvableError, SubjectResolver
from catalogq.jobs.types import (
    ARTIFACT_PROXY_STATUSES,
    FullJobResult,
    JobQueueStats,
    JobResult,
    JobSnapshot,
    MetadataJobResult,
    ProxyJobResult,
    WorkerClaim,
)

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired: worker timeout"


class JobNotFoundError(RuntimeError):
    pass


class JobConflictError(RuntimeError):
    pass


class JobPolicyError(RuntimeError):
    pass


class InvalidJobResultError(RuntimeError):
    pass


_RESULT_KINDS: dict[type, JobKind] = {
    MetadataJobResult: JobKind.METADATA,
    ProxyJobResult: JobKind.PROXY,
    FullJobResult: JobKind.FULL,
}


class JobStore:
    """Owns every write to ``catalog_jobs``.

    Each mutation is a single conditional UPDATE whose WHERE clause carries the
    ownership/state guard, so a zero-row update means the caller lost the race
    and is reported as a rejection rather than raised.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        resolver: SubjectResolver | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._resolver = resolver or SpaceRootResolver(settings.spaces_root)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _normalize_worker_id(self, worker_id: str) -> str:
        normalized = worker_id.strip()
        if not normalized:
            raise ValueError("worker_id cannot be blank")
        return normalized

    def enqueue(
        self,
        asset_id: int,
        job_kind: JobKind = JobKind.FULL,
        *,
        max_attempts: int | None = None,
    ) -> JobSnapshot:
        effective_max_attempts = self._settings.job_max_attempts if max_attempts is None else max_attempts
        if effective_max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        now = self._now()
        with self._session_factory() as session:
            asset = session.get(Asset, asset_id)
            if asset is None:
                raise JobNotFoundError(f"Asset not found: {asset_id}")
            if not asset.primary_file_path:
                raise JobPolicyError(f"Asset {asset_id} has no primary file to process")

            job = CatalogJob(
                asset_id=asset.id,
                space_name=asset.space_name,
                payload_ref=asset.primary_file_path,
                asset_type=asset.asset_type,
                job_kind=job_kind,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=effective_max_attempts,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            asset.proxy_status = ProxyStatus.QUEUED
            asset.updated_at = now
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobConflictError(f"Asset {asset_id} already has an active job") from exc
            session.refresh(job)
            logger.info("Queued %s job %s for asset %s", job_kind.value, job.id, asset_id)
            return self._to_snapshot(job)

    def claim_next(self, worker_id: str) -> WorkerClaim | None:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        now = self._now()

        with self._session_factory() as session:
            candidate = (
                select(CatalogJob.id)
                .where(CatalogJob.status == JobStatus.PENDING)
                .order_by(CatalogJob.created_at.asc(), CatalogJob.id.asc())
                .limit(1)
                .scalar_subquery()
            )
            claimed_id = session.execute(
                update(CatalogJob)
                .where(CatalogJob.id == candidate, CatalogJob.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.CLAIMED,
                    worker_id=normalized_worker_id,
                    stage=None,
                    attempts=CatalogJob.attempts + 1,
                    claimed_at=now,
                    updated_at=now,
                )
                .returning(CatalogJob.id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()

            job = session.get(CatalogJob, claimed_id)
            if job is None:
                raise JobConflictError("Claimed job disappeared before snapshot fetch")

            try:
                content_root = self._resolver.resolve_content_root(job.space_name)
            except SubjectNotResolvableError as exc:
                reason = f"Failed to resolve space: {exc}"
                logger.error(
                    "Job %s for asset %s failed permanently at claim: %s",
                    job.id,
                    job.asset_id,
                    reason,
                )
                self._fail_unresolvable(session, job_id=job.id, worker_id=normalized_worker_id, reason=reason)
                session.commit()
                return None

            self._set_asset_status(session, job.asset_id, ProxyStatus.GENERATING, now)
            session.commit()
            logger.info(
                "Job %s (asset %s, attempt %s/%s) claimed by %s",
                job.id,
                job.asset_id,
                job.attempts,
                job.max_attempts,
                normalized_worker_id,
            )
            return WorkerClaim(
                job=self._to_snapshot(job),
                content_root=content_root,
                output_root=self._settings.catalog_data_path,
            )

    def report_progress(self, job_id: int, worker_id: str, stage: str | None = None) -> bool:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        values: dict[str, Any] = {"status": JobStatus.PROCESSING, "updated_at": self._now()}
        if stage is not None:
            values["stage"] = stage

        with self._session_factory() as session:
            result = session.execute(
                update(CatalogJob)
                .where(
                    CatalogJob.id == job_id,
                    CatalogJob.worker_id == normalized_worker_id,
                    CatalogJob.status.in_(ACTIVE_JOB_STATUSES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) > 0

    def heartbeat(self, job_id: int, worker_id: str) -> bool:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        with self._session_factory() as session:
            result = session.execute(
                update(CatalogJob)
                .where(
                    CatalogJob.id == job_id,
                    CatalogJob.worker_id == normalized_worker_id,
                    CatalogJob.status.in_(ACTIVE_JOB_STATUSES),
                )
                .values(updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0) > 0

    def complete(self, job_id: int, worker_id: str, result: JobResult) -> bool:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        now = self._now()

        with self._session_factory() as session:
            job = session.get(CatalogJob, job_id)
            if job is None or job.worker_id != normalized_worker_id or job.status not in ACTIVE_JOB_STATUSES:
                return False
            self._validate_result(job, result)

            asset_id = session.execute(
                update(CatalogJob)
                .where(
                    CatalogJob.id == job_id,
                    CatalogJob.worker_id == normalized_worker_id,
                    CatalogJob.status.in_(ACTIVE_JOB_STATUSES),
                )
                .values(
                    status=JobStatus.COMPLETED,
                    worker_id=None,
                    stage=None,
                    completed_at=now,
                    updated_at=now,
                )
                .returning(CatalogJob.asset_id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if asset_id is None:
                session.rollback()
                return False

            asset = session.get(Asset, asset_id)
            if asset is not None:
                self._apply_result(asset, result, now)
            session.commit()
            logger.info("Job %s completed by %s, asset %s updated", job_id, normalized_worker_id, asset_id)
            return True

    def fail(self, job_id: int, worker_id: str, reason: str) -> bool:
        normalized_worker_id = self._normalize_worker_id(worker_id)
        now = self._now()
        with self._session_factory() as session:
            outcome = self._release_job(
                session,
                job_id=job_id,
                reason=reason,
                now=now,
                worker_id=normalized_worker_id,
            )
            if outcome is None:
                session.rollback()
                return False
            session.commit()

        if outcome == JobStatus.PENDING:
            logger.warning("Job %s failed on %s, re-queued for retry: %s", job_id, normalized_worker_id, reason)
        else:
            logger.error("Job %s permanently failed after max attempts: %s", job_id, reason)
        return True

    def expire_stale(self, timeout_seconds: float) -> int:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than zero")

        now = self._now()
        cutoff = now - timedelta(seconds=timeout_seconds)
        requeued = 0
        failed = 0
        with self._session_factory() as session:
            stale_ids = list(
                session.scalars(
                    select(CatalogJob.id)
                    .where(
                        CatalogJob.status.in_(ACTIVE_JOB_STATUSES),
                        CatalogJob.updated_at < cutoff,
                    )
                    .order_by(CatalogJob.id.asc())
                ).all()
            )
            for job_id in stale_ids:
                outcome = self._release_job(
                    session,
                    job_id=job_id,
                    reason=EXPIRED_REASON,
                    now=now,
                    stale_before=cutoff,
                )
                if outcome == JobStatus.PENDING:
                    requeued += 1
                elif outcome == JobStatus.FAILED:
                    failed += 1
            session.commit()

        expired = requeued + failed
        if expired:
            logger.warning(
                "Expired %s stale catalog jobs (%s re-queued, %s failed permanently)",
                expired,
                requeued,
                failed,
            )
        return expired

    def get_job(self, job_id: int) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(CatalogJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def list_jobs_for_asset(self, asset_id: int) -> list[JobSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(CatalogJob)
                .where(CatalogJob.asset_id == asset_id)
                .order_by(CatalogJob.created_at.desc(), CatalogJob.id.desc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def get_stats(self) -> JobQueueStats:
        with self._session_factory() as session:
            counts = dict(
                session.execute(
                    select(CatalogJob.status, func.count()).group_by(CatalogJob.status)
                ).all()
            )
        return JobQueueStats(
            generated_at=self._now(),
            pending=int(counts.get(JobStatus.PENDING, 0)),
            claimed=int(counts.get(JobStatus.CLAIMED, 0)),
            processing=int(counts.get(JobStatus.PROCESSING, 0)),
            completed=int(counts.get(JobStatus.COMPLETED, 0)),
            failed=int(counts.get(JobStatus.FAILED, 0)),
        )

    def pending_count(self) -> int:
        with self._session_factory() as session:
            return int(
                session.scalar(
                    select(func.count()).select_from(CatalogJob).where(CatalogJob.status == JobStatus.PENDING)
                )
                or 0
            )

    def _release_job(
        self,
        session: Session,
        *,
        job_id: int,
        reason: str,
        now: datetime,
        worker_id: str | None = None,
        stale_before: datetime | None = None,
    ) -> JobStatus | None:
        guard = [CatalogJob.id == job_id, CatalogJob.status.in_(ACTIVE_JOB_STATUSES)]
        if worker_id is not None:
            guard.append(CatalogJob.worker_id == worker_id)
        if stale_before is not None:
            guard.append(CatalogJob.updated_at < stale_before)

        requeued_asset_id = session.execute(
            update(CatalogJob)
            .where(*guard, CatalogJob.attempts < CatalogJob.max_attempts)
            .values(
                status=JobStatus.PENDING,
                worker_id=None,
                stage=None,
                claimed_at=None,
                error_message=reason,
                updated_at=now,
            )
            .returning(CatalogJob.asset_id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if requeued_asset_id is not None:
            self._set_asset_status(session, requeued_asset_id, ProxyStatus.QUEUED, now)
            return JobStatus.PENDING

        failed_asset_id = session.execute(
            update(CatalogJob)
            .where(*guard, CatalogJob.attempts >= CatalogJob.max_attempts)
            .values(
                status=JobStatus.FAILED,
                worker_id=None,
                stage=None,
                error_message=reason,
                completed_at=now,
                updated_at=now,
            )
            .returning(CatalogJob.asset_id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if failed_asset_id is not None:
            self._set_asset_status(session, failed_asset_id, ProxyStatus.FAILED, now)
            return JobStatus.FAILED
        return None

    def _fail_unresolvable(self, session: Session, *, job_id: int, worker_id: str, reason: str) -> None:
        now = self._now()
        asset_id = session.execute(
            update(CatalogJob)
            .where(
                CatalogJob.id == job_id,
                CatalogJob.worker_id == worker_id,
                CatalogJob.status == JobStatus.CLAIMED,
            )
            .values(
                status=JobStatus.FAILED,
                worker_id=None,
                stage=None,
                error_message=reason,
                completed_at=now,
                updated_at=now,
            )
            .returning(CatalogJob.asset_id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if asset_id is not None:
            self._set_asset_status(session, asset_id, ProxyStatus.FAILED, now)

    def _set_asset_status(self, session: Session, asset_id: int, proxy_status: ProxyStatus, now: datetime) -> None:
        session.execute(
            update(Asset)
            .where(Asset.id == asset_id)
            .values(proxy_status=proxy_status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def _validate_result(self, job: CatalogJob, result: JobResult) -> None:
        result_kind = _RESULT_KINDS.get(type(result))
        if result_kind is None:
            raise InvalidJobResultError(f"Unsupported result type: {type(result).__name__}")
        if result_kind != job.job_kind:
            raise InvalidJobResultError(
                f"Result kind {result_kind.value} does not match job {job.id} kind {job.job_kind.value}"
            )
        if isinstance(result, (ProxyJobResult, FullJobResult)) and result.proxy_status not in ARTIFACT_PROXY_STATUSES:
            allowed = ", ".join(sorted(status.value for status in ARTIFACT_PROXY_STATUSES))
            raise InvalidJobResultError(f"proxy_status must be one of: {allowed}")

    def _apply_result(self, asset: Asset, result: JobResult, now: datetime) -> None:
        if isinstance(result, (MetadataJobResult, FullJobResult)) and result.metadata:
            merged = dict(asset.metadata_json or {})
            merged.update(result.metadata)
            asset.metadata_json = merged

        if isinstance(result, (ProxyJobResult, FullJobResult)):
            if result.thumbnail_path is not None:
                asset.thumbnail_path = result.thumbnail_path
            if result.proxy_path is not None:
                asset.proxy_path = result.proxy_path
            asset.proxy_status = result.proxy_status
        else:
            asset.proxy_status = ProxyStatus.READY
        asset.updated_at = now

    def _to_snapshot(self, job: CatalogJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            asset_id=job.asset_id,
            space_name=job.space_name,
            payload_ref=job.payload_ref,
            asset_type=job.asset_type,
            job_kind=job.job_kind,
            status=job.status,
            worker_id=job.worker_id,
            stage=job.stage,
            error_message=job.error_message,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            claimed_at=self._coerce_utc(job.claimed_at),
            completed_at=self._coerce_utc(job.completed_at),
            created_at=self._coerce_utc(job.created_at) or job.created_at,
            updated_at=self._coerce_utc(job.updated_at) or job.updated_at,
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["asset_type"] = snapshot.asset_type.value
    payload["job_kind"] = snapshot.job_kind.value
    payload["status"] = snapshot.status.value
    return payload


def claim_to_dict(claim: WorkerClaim) -> dict[str, Any]:
    return {
        "job": snapshot_to_dict(claim.job),
        "content_root": claim.content_root.as_posix(),
        "output_root": claim.output_root.as_posix(),
    }


def stats_to_dict(stats: JobQueueStats) -> dict[str, Any]:
    payload = asdict(stats)
    payload["in_flight"] = stats.in_flight
    return payload
