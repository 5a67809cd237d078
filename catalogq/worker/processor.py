from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from catalogq.core.config import WorkerSettings
from catalogq.core.path_safety import resolve_under_root
from catalogq.db.models import JobKind
from catalogq.jobs.types import FullJobResult, JobResult, MetadataJobResult, ProxyJobResult, WorkerClaim
from catalogq.worker.tools import MediaToolkit, ToolExecutionError

logger = logging.getLogger(__name__)

PROXY_DIRNAME = "proxies"


class JobInputError(RuntimeError):
    pass


class JobProcessor(Protocol):
    def process(self, claim: WorkerClaim, cancel_event: threading.Event) -> JobResult:
        """Execute the job body; raise to report a transient failure."""
        ...


def _relative_to(path: Path | None, root: Path) -> str | None:
    if path is None:
        return None
    try:
        return path.resolve(strict=False).relative_to(root.resolve(strict=False)).as_posix()
    except ValueError:
        return path.as_posix()


class MediaJobProcessor:
    """Extracts metadata and renders thumbnails/proxies for a claimed asset."""

    def __init__(self, settings: WorkerSettings, toolkit: MediaToolkit | None = None):
        self._settings = settings
        self._toolkit = toolkit or MediaToolkit(settings)

    def resolve_input_path(self, claim: WorkerClaim) -> Path:
        input_path = resolve_under_root(claim.content_root, claim.job.payload_ref)
        if not input_path.is_file():
            raise JobInputError(f"Source file not accessible: {input_path.as_posix()}")
        return input_path

    def resolve_output_dir(self, claim: WorkerClaim) -> Path:
        return resolve_under_root(
            claim.output_root,
            f"{PROXY_DIRNAME}/{claim.job.space_name}/{claim.job.asset_id}",
        )

    def process(self, claim: WorkerClaim, cancel_event: threading.Event) -> JobResult:
        job = claim.job
        input_path = self.resolve_input_path(claim)

        metadata: dict[str, object] = {}
        if job.job_kind in (JobKind.METADATA, JobKind.FULL):
            try:
                metadata = self._toolkit.extract_metadata(input_path, cancel_event)
            except ToolExecutionError as exc:
                if job.job_kind == JobKind.METADATA:
                    raise
                logger.warning("Metadata extraction failed for job %s (non-fatal): %s", job.id, exc)
            else:
                logger.info("Extracted %s metadata fields for job %s", len(metadata), job.id)

        if job.job_kind == JobKind.METADATA:
            return MetadataJobResult(metadata=metadata)

        outcome = self._toolkit.generate_proxies(
            input_path,
            self.resolve_output_dir(claim),
            job.asset_type,
            cancel_event,
        )
        thumbnail_path = _relative_to(outcome.thumbnail_path, claim.output_root)
        proxy_path = _relative_to(outcome.proxy_path, claim.output_root)
        logger.info("Proxy generation for job %s finished with status %s", job.id, outcome.proxy_status.value)

        if job.job_kind == JobKind.PROXY:
            return ProxyJobResult(
                proxy_status=outcome.proxy_status,
                thumbnail_path=thumbnail_path,
                proxy_path=proxy_path,
            )
        return FullJobResult(
            proxy_status=outcome.proxy_status,
            metadata=metadata,
            thumbnail_path=thumbnail_path,
            proxy_path=proxy_path,
        )
