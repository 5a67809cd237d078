from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Union

from catalogq.db.models import AssetType, JobKind, JobStatus, ProxyStatus


@dataclass(slots=True)
class JobSnapshot:
    id: int
    asset_id: int
    space_name: str
    payload_ref: str
    asset_type: AssetType
    job_kind: JobKind
    status: JobStatus
    worker_id: str | None
    stage: str | None
    error_message: str | None
    attempts: int
    max_attempts: int
    claimed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class WorkerClaim:
    """A claimed job plus the roots a worker needs to execute it.

    ``content_root`` is the absolute storage root ``job.payload_ref`` is relative to;
    ``output_root`` is where generated artifacts are written.
    """

    job: JobSnapshot
    content_root: Path
    output_root: Path


@dataclass(slots=True)
class JobQueueStats:
    generated_at: datetime
    pending: int
    claimed: int
    processing: int
    completed: int
    failed: int

    @property
    def in_flight(self) -> int:
        return self.claimed + self.processing


# Generated-artifact outcomes a worker may report for an asset.
ARTIFACT_PROXY_STATUSES = frozenset({ProxyStatus.READY, ProxyStatus.FAILED, ProxyStatus.UNSUPPORTED})


@dataclass(frozen=True)
class MetadataJobResult:
    metadata: dict[str, Any] = field(default_factory=dict)
    kind: Literal["metadata"] = "metadata"


@dataclass(frozen=True)
class ProxyJobResult:
    proxy_status: ProxyStatus
    thumbnail_path: str | None = None
    proxy_path: str | None = None
    kind: Literal["proxy"] = "proxy"


@dataclass(frozen=True)
class FullJobResult:
    proxy_status: ProxyStatus
    metadata: dict[str, Any] = field(default_factory=dict)
    thumbnail_path: str | None = None
    proxy_path: str | None = None
    kind: Literal["full"] = "full"


JobResult = Union[MetadataJobResult, ProxyJobResult, FullJobResult]
