from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from catalogq.core.config import WorkerSettings
from catalogq.jobs.types import JobResult, WorkerClaim
from catalogq.worker.client import ManagerClient, ManagerRequestError, ManagerUnavailableError
from catalogq.worker.processor import JobProcessor, MediaJobProcessor
from catalogq.worker.tools import ToolCancelledError

logger = logging.getLogger(__name__)

PROCESSING_STAGE = "processing"

# How long abandoned jobs get to kill their tool processes during shutdown.
_ABANDON_JOIN_SECONDS = 5.0


@dataclass
class ActiveJob:
    claim: WorkerClaim
    cancel_event: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    ownership_lost: threading.Event = field(default_factory=threading.Event)
    abandoned: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None

    @property
    def job_id(self) -> int:
        return self.claim.job.id

    def lose_ownership(self) -> None:
        self.ownership_lost.set()
        self.cancel_event.set()


class WorkerLoop:
    """Claims jobs from the manager and runs each one on its own thread.

    A job whose progress report or heartbeat is rejected has been reclaimed by
    the manager: its tools are cancelled and nothing further is reported for
    it. An unreachable manager never changes what the worker believes about
    its jobs; undeliverable outcomes are left for the manager's reaper.
    """

    def __init__(
        self,
        client: ManagerClient,
        settings: WorkerSettings,
        processor: JobProcessor | None = None,
    ):
        self._client = client
        self._settings = settings
        self._processor = processor or MediaJobProcessor(settings)
        self._active: dict[int, ActiveJob] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._capacity_freed = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def active_job_count(self) -> int:
        with self._lock:
            return len(self._active)

    def active_jobs(self) -> list[ActiveJob]:
        with self._lock:
            return list(self._active.values())

    def _has_capacity(self) -> bool:
        return self.active_job_count < self._settings.max_concurrent_jobs

    def run_once(self) -> ActiveJob | None:
        """Claim at most one job and start it; returns the started job."""
        if self._stop_event.is_set() or not self._has_capacity():
            return None

        try:
            claim = self._client.claim()
        except ManagerUnavailableError as exc:
            logger.warning("Claim failed, manager unavailable: %s", exc)
            return None
        except ManagerRequestError as exc:
            logger.error("Claim rejected: %s", exc)
            return None
        if claim is None:
            return None

        logger.info(
            "Claimed job %s (asset %s, %s %s, attempt %s/%s)",
            claim.job.id,
            claim.job.asset_id,
            claim.job.asset_type.value,
            claim.job.job_kind.value,
            claim.job.attempts,
            claim.job.max_attempts,
        )
        return self._start_job(claim)

    def run(self) -> None:
        logger.info(
            "Worker %s polling %s (max_concurrent=%s, poll=%ss, heartbeat=%ss)",
            self._client.worker_id,
            self._settings.manager_url,
            self._settings.max_concurrent_jobs,
            self._settings.poll_interval_seconds,
            self._settings.heartbeat_interval_seconds,
        )
        while not self._stop_event.is_set():
            if not self._has_capacity():
                self._capacity_freed.wait(self._settings.poll_interval_seconds)
                self._capacity_freed.clear()
                continue
            if self.run_once() is None:
                self._stop_event.wait(self._settings.poll_interval_seconds)

    def request_stop(self) -> None:
        self._stop_event.set()
        self._capacity_freed.set()

    def stop(self, wait_seconds: float | None = None) -> int:
        """Stop claiming, drain in-flight jobs, then abandon what is left.

        Returns the number of abandoned jobs. Abandoned jobs are not reported;
        the manager reclaims them once their heartbeats go stale.
        """
        self.request_stop()
        grace = self._settings.shutdown_grace_seconds if wait_seconds is None else wait_seconds
        deadline = time.monotonic() + grace

        in_flight = self.active_jobs()
        if in_flight:
            logger.info("Waiting up to %ss for %s active jobs to finish", grace, len(in_flight))
        for active in in_flight:
            if active.thread is not None:
                active.thread.join(timeout=max(0.0, deadline - time.monotonic()))

        remaining = self.active_jobs()
        if remaining:
            logger.warning("Shutdown grace period elapsed; abandoning %s jobs", len(remaining))
            for active in remaining:
                active.abandoned.set()
                active.cancel_event.set()
            for active in remaining:
                if active.thread is not None:
                    active.thread.join(timeout=_ABANDON_JOIN_SECONDS)

        logger.info("Worker loop stopped")
        return len(remaining)

    def _start_job(self, claim: WorkerClaim) -> ActiveJob:
        active = ActiveJob(claim=claim)
        active.thread = threading.Thread(
            target=self._execute,
            args=(active,),
            name=f"catalogq-job-{claim.job.id}",
            daemon=True,
        )
        with self._lock:
            self._active[active.job_id] = active
        active.thread.start()
        return active

    def _heartbeat_loop(self, active: ActiveJob) -> None:
        while not active.finished.wait(self._settings.heartbeat_interval_seconds):
            try:
                accepted = self._client.heartbeat(active.job_id)
            except ManagerUnavailableError as exc:
                logger.warning("Heartbeat for job %s not delivered: %s", active.job_id, exc)
                continue
            except ManagerRequestError as exc:
                logger.error("Heartbeat for job %s refused: %s", active.job_id, exc)
                continue
            if not accepted:
                logger.warning("Heartbeat rejected for job %s; job was reclaimed, cancelling", active.job_id)
                active.lose_ownership()
                return

    def _execute(self, active: ActiveJob) -> None:
        job_id = active.job_id
        heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(active,),
            name=f"catalogq-heartbeat-{job_id}",
            daemon=True,
        )
        try:
            if not self._mark_processing(active):
                return
            heartbeat_thread.start()

            try:
                result = self._processor.process(active.claim, active.cancel_event)
            except ToolCancelledError:
                self._log_cancelled(active)
                return
            except Exception as exc:
                if active.cancel_event.is_set():
                    self._log_cancelled(active)
                    return
                logger.error("Job %s failed: %s", job_id, exc)
                self._report_failure(active, str(exc) or type(exc).__name__)
                return

            if active.cancel_event.is_set():
                self._log_cancelled(active)
                return
            self._report_completion(active, result)
        finally:
            active.finished.set()
            if heartbeat_thread.is_alive():
                heartbeat_thread.join()
            with self._lock:
                self._active.pop(job_id, None)
            self._capacity_freed.set()

    def _mark_processing(self, active: ActiveJob) -> bool:
        try:
            accepted = self._client.report_progress(active.job_id, stage=PROCESSING_STAGE)
        except ManagerUnavailableError as exc:
            logger.warning("Progress for job %s not delivered, continuing: %s", active.job_id, exc)
            return True
        except ManagerRequestError as exc:
            logger.error("Progress for job %s refused, continuing: %s", active.job_id, exc)
            return True
        if not accepted:
            logger.warning("Progress rejected for job %s; job was reclaimed, skipping", active.job_id)
            active.lose_ownership()
            return False
        return True

    def _log_cancelled(self, active: ActiveJob) -> None:
        if active.abandoned.is_set():
            logger.warning("Job %s abandoned during shutdown; left for the manager to reclaim", active.job_id)
        else:
            logger.info("Job %s cancelled after ownership loss; not reporting", active.job_id)

    def _report_completion(self, active: ActiveJob, result: JobResult) -> None:
        try:
            accepted = self._client.complete(active.job_id, result)
        except ManagerUnavailableError as exc:
            logger.error("Completion of job %s not delivered; left for the reaper: %s", active.job_id, exc)
            return
        except ManagerRequestError as exc:
            logger.error("Completion of job %s refused: %s", active.job_id, exc)
            self._report_failure(active, f"Result rejected by manager: {exc}")
            return
        if accepted:
            logger.info("Job %s completed (asset %s)", active.job_id, active.claim.job.asset_id)
        else:
            logger.warning("Completion of job %s rejected; job was reclaimed", active.job_id)

    def _report_failure(self, active: ActiveJob, reason: str) -> None:
        try:
            accepted = self._client.fail(active.job_id, reason)
        except (ManagerUnavailableError, ManagerRequestError) as exc:
            logger.error("Failure of job %s not delivered; left for the reaper: %s", active.job_id, exc)
            return
        if not accepted:
            logger.warning("Failure report for job %s rejected; job was reclaimed", active.job_id)
