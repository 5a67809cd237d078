from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from catalogq.api.schemas.worker import JobResponse
from catalogq.db.models import JobKind


class QueueSpaceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_kind: JobKind = JobKind.FULL


class QueueSpaceResponse(BaseModel):
    space_name: str
    job_kind: str
    queued: int


class EnqueueAssetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_kind: JobKind = JobKind.FULL


class EnqueueAssetResponse(BaseModel):
    queued: bool
    job: JobResponse | None


class JobListResponse(BaseModel):
    items: list[JobResponse]


class ExpireStaleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: int | None = Field(default=None, ge=1)


class ExpireStaleResponse(BaseModel):
    expired: int
