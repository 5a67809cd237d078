from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from catalogq.db.models import ProxyStatus
from catalogq.jobs.types import FullJobResult, JobResult, MetadataJobResult, ProxyJobResult


class ClaimJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)


class JobProgressRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)
    stage: str | None = Field(default=None, max_length=255)


class JobHeartbeatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)


class MetadataResultPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["metadata"]
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_result(self) -> JobResult:
        return MetadataJobResult(metadata=self.metadata)


class ProxyResultPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["proxy"]
    proxy_status: ProxyStatus
    thumbnail_path: str | None = None
    proxy_path: str | None = None

    def to_result(self) -> JobResult:
        return ProxyJobResult(
            proxy_status=self.proxy_status,
            thumbnail_path=self.thumbnail_path,
            proxy_path=self.proxy_path,
        )


class FullResultPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["full"]
    proxy_status: ProxyStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    thumbnail_path: str | None = None
    proxy_path: str | None = None

    def to_result(self) -> JobResult:
        return FullJobResult(
            proxy_status=self.proxy_status,
            metadata=self.metadata,
            thumbnail_path=self.thumbnail_path,
            proxy_path=self.proxy_path,
        )


JobResultPayload = Annotated[
    Union[MetadataResultPayload, ProxyResultPayload, FullResultPayload],
    Field(discriminator="kind"),
]


class JobCompleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)
    result: JobResultPayload


class JobFailRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)
    error: str = Field(min_length=1, max_length=4000)


class JobResponse(BaseModel):
    id: int
    asset_id: int
    space_name: str
    payload_ref: str
    asset_type: str
    job_kind: str
    status: str
    worker_id: str | None
    stage: str | None
    error_message: str | None
    attempts: int
    max_attempts: int
    claimed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class WorkerClaimResponse(BaseModel):
    job: JobResponse
    content_root: str
    output_root: str


class ClaimEnvelope(BaseModel):
    data: WorkerClaimResponse | None


class AckData(BaseModel):
    ok: bool


class AckEnvelope(BaseModel):
    data: AckData


class QueueStatsResponse(BaseModel):
    generated_at: datetime
    pending: int
    claimed: int
    processing: int
    completed: int
    failed: int
    in_flight: int


class ManagerStatusResponse(BaseModel):
    status: str
    service: str
    environment: str
    timestamp: datetime
    stale_timeout_seconds: int
    queue: QueueStatsResponse
