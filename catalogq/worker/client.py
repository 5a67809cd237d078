from __future__ import annotations

from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from catalogq.api.schemas.worker import ManagerStatusResponse, WorkerClaimResponse
from catalogq.core.config import WorkerSettings
from catalogq.db.models import AssetType, JobKind, JobStatus
from catalogq.jobs.types import JobResult, JobSnapshot, WorkerClaim

WORKER_API_PREFIX = "/api/v1/worker"


class ManagerUnavailableError(RuntimeError):
    """The manager could not be reached or answered with a server error."""


class ManagerRequestError(RuntimeError):
    """The manager refused a request for a reason other than ownership loss."""


def result_to_dict(result: JobResult) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in asdict(result).items()}


def _claim_from_payload(payload: dict[str, Any]) -> WorkerClaim:
    parsed = WorkerClaimResponse.model_validate(payload)
    job = parsed.job
    return WorkerClaim(
        job=JobSnapshot(
            id=job.id,
            asset_id=job.asset_id,
            space_name=job.space_name,
            payload_ref=job.payload_ref,
            asset_type=AssetType(job.asset_type),
            job_kind=JobKind(job.job_kind),
            status=JobStatus(job.status),
            worker_id=job.worker_id,
            stage=job.stage,
            error_message=job.error_message,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            claimed_at=job.claimed_at,
            completed_at=job.completed_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        ),
        content_root=Path(parsed.content_root),
        output_root=Path(parsed.output_root),
    )


class ManagerClient:
    """Synchronous client for the manager's worker API.

    Ownership rejections (HTTP 404) are returned as ``False``; transport
    failures and 5xx responses raise ``ManagerUnavailableError`` so callers
    never mistake an unreachable manager for a lost job.
    """

    def __init__(self, settings: WorkerSettings, http_client: httpx.Client | None = None):
        self._settings = settings
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(
            base_url=settings.manager_url,
            timeout=settings.request_timeout_seconds,
        )
        self._headers = {"Authorization": f"Worker {settings.api_key}"}

    @property
    def worker_id(self) -> str:
        return self._settings.worker_id

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def __enter__(self) -> "ManagerClient":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._http.request(method, f"{WORKER_API_PREFIX}{path}", json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ManagerUnavailableError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 500:
            raise ManagerUnavailableError(f"{method} {path} returned HTTP {response.status_code}")
        return response

    def _acknowledged(self, response: httpx.Response, path: str) -> bool:
        if response.status_code == httpx.codes.NOT_FOUND:
            return False
        if response.is_error:
            raise ManagerRequestError(f"{path} rejected with HTTP {response.status_code}: {response.text}")
        return True

    def _decode(self, response: httpx.Response, path: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ManagerRequestError(f"{path} answered with a non-JSON body: {response.text[:200]!r}") from exc
        if not isinstance(body, dict):
            raise ManagerRequestError(f"{path} answered with an unexpected JSON body: {body!r}")
        return body

    def claim(self) -> WorkerClaim | None:
        path = "/jobs/claim"
        response = self._request("POST", path, {"worker_id": self.worker_id})
        if response.is_error:
            raise ManagerRequestError(f"claim rejected with HTTP {response.status_code}: {response.text}")
        data = self._decode(response, path).get("data")
        if not data:
            return None
        try:
            return _claim_from_payload(data)
        except ValueError as exc:
            raise ManagerRequestError(f"claim answered with a malformed job: {exc}") from exc

    def fetch_status(self) -> ManagerStatusResponse:
        path = "/status"
        response = self._request("GET", path)
        if response.is_error:
            raise ManagerRequestError(f"status rejected with HTTP {response.status_code}: {response.text}")
        try:
            return ManagerStatusResponse.model_validate(self._decode(response, path))
        except ValidationError as exc:
            raise ManagerRequestError(f"status answered with a malformed body: {exc}") from exc

    def report_progress(self, job_id: int, stage: str | None = None) -> bool:
        path = f"/jobs/{job_id}/progress"
        payload: dict[str, Any] = {"worker_id": self.worker_id}
        if stage is not None:
            payload["stage"] = stage
        return self._acknowledged(self._request("PUT", path, payload), path)

    def heartbeat(self, job_id: int) -> bool:
        path = f"/jobs/{job_id}/heartbeat"
        return self._acknowledged(self._request("PUT", path, {"worker_id": self.worker_id}), path)

    def complete(self, job_id: int, result: JobResult) -> bool:
        path = f"/jobs/{job_id}/complete"
        payload = {"worker_id": self.worker_id, "result": result_to_dict(result)}
        return self._acknowledged(self._request("PUT", path, payload), path)

    def fail(self, job_id: int, error: str) -> bool:
        path = f"/jobs/{job_id}/fail"
        payload = {"worker_id": self.worker_id, "error": error[:4000] or "unknown error"}
        return self._acknowledged(self._request("PUT", path, payload), path)
