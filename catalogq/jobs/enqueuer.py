from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from catalogq.db.models import NON_TERMINAL_JOB_STATUSES, Asset, CatalogJob, JobKind, ProxyStatus
from catalogq.jobs.service import JobConflictError, JobStore
from catalogq.jobs.types import JobSnapshot

logger = logging.getLogger(__name__)


class Enqueuer:
    """Creates pending jobs for assets that need processing.

    Skips any asset that already has a non-terminal job. The pre-check is an
    optimisation only; concurrent callers are serialised by the store's
    single-active-job index and the loser is counted as skipped.
    """

    def __init__(self, store: JobStore, session_factory: sessionmaker[Session]):
        self._store = store
        self._session_factory = session_factory

    def _has_active_job(self, session: Session, asset_id: int) -> bool:
        found = session.scalar(
            select(CatalogJob.id)
            .where(CatalogJob.asset_id == asset_id, CatalogJob.status.in_(NON_TERMINAL_JOB_STATUSES))
            .limit(1)
        )
        return found is not None

    def queue_jobs_for_space(self, space_name: str, job_kind: JobKind = JobKind.FULL) -> int:
        active_assets = select(CatalogJob.asset_id).where(CatalogJob.status.in_(NON_TERMINAL_JOB_STATUSES))
        with self._session_factory() as session:
            asset_ids = list(
                session.scalars(
                    select(Asset.id)
                    .where(
                        Asset.space_name == space_name,
                        Asset.proxy_status == ProxyStatus.NONE,
                        Asset.primary_file_path.is_not(None),
                        Asset.primary_file_path != "",
                        Asset.is_archive_stub.is_(False),
                        Asset.id.not_in(active_assets),
                    )
                    .order_by(Asset.id.asc())
                ).all()
            )

        queued = 0
        for asset_id in asset_ids:
            try:
                self._store.enqueue(asset_id, job_kind)
            except JobConflictError:
                logger.debug("Asset %s gained an active job concurrently; skipped", asset_id)
                continue
            queued += 1

        if queued:
            logger.info("Queued %s %s jobs for space %s", queued, job_kind.value, space_name)
        return queued

    def enqueue_asset(self, asset_id: int, job_kind: JobKind = JobKind.FULL) -> JobSnapshot | None:
        with self._session_factory() as session:
            if self._has_active_job(session, asset_id):
                logger.info("Asset %s already has an active job; skipped", asset_id)
                return None

        try:
            return self._store.enqueue(asset_id, job_kind)
        except JobConflictError:
            logger.info("Asset %s gained an active job concurrently; skipped", asset_id)
            return None
