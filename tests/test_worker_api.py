from __future__ import annotations

import os
from pathlib import Path

from fastapi.testclient import TestClient

import catalogq.db.session as db_session_module
from catalogq.api.app import create_app
from catalogq.core.config import get_settings
from catalogq.db.init_db import initialize_database
from catalogq.db.models import Asset, AssetType

WORKER_KEY = "s3cret-worker-key"
AUTH = {"Authorization": f"Worker {WORKER_KEY}"}


def _prepare_env(tmp_path: Path, *, worker_api_key: str = WORKER_KEY) -> TestClient:
    state_root = tmp_path / "state"
    spaces_root = tmp_path / "spaces"
    state_root.mkdir(parents=True, exist_ok=True)
    (spaces_root / "projects").mkdir(parents=True, exist_ok=True)

    os.environ["CATALOGQ_STATE_ROOT"] = state_root.as_posix()
    os.environ["CATALOGQ_SPACES_ROOT"] = spaces_root.as_posix()
    os.environ["CATALOGQ_CATALOG_DATA_PATH"] = (state_root / "catalog").as_posix()
    os.environ["CATALOGQ_WORKER_API_KEY"] = worker_api_key
    os.environ["CATALOGQ_REAPER_ENABLED"] = "false"

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return TestClient(create_app())


def _create_asset(name: str = "clip.mov", *, asset_type: AssetType = AssetType.VIDEO) -> int:
    with db_session_module.get_session_factory()() as session:
        asset = Asset(space_name="projects", name=name, asset_type=asset_type, primary_file_path=f"shoot/{name}")
        session.add(asset)
        session.commit()
        return asset.id


def _enqueue(client: TestClient, asset_id: int, job_kind: str = "full") -> int:
    response = client.post(f"/api/v1/catalog/assets/{asset_id}/jobs", json={"job_kind": job_kind})
    assert response.status_code == 200
    body = response.json()
    assert body["queued"] is True
    return int(body["job"]["id"])


def test_worker_api_is_disabled_without_configured_key(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path, worker_api_key="")
    response = client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)
    assert response.status_code == 403


def test_worker_api_rejects_bad_credentials(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    payload = {"worker_id": "worker-a"}

    assert client.post("/api/v1/worker/jobs/claim", json=payload).status_code == 401
    assert client.post(
        "/api/v1/worker/jobs/claim", json=payload, headers={"Authorization": f"Bearer {WORKER_KEY}"}
    ).status_code == 401
    assert client.post(
        "/api/v1/worker/jobs/claim", json=payload, headers={"Authorization": "Worker wrong-key"}
    ).status_code == 401


def test_claim_returns_null_data_when_queue_empty(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    response = client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"data": None}


def test_full_job_lifecycle_over_http(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    asset_id = _create_asset()
    job_id = _enqueue(client, asset_id)

    claim = client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)
    assert claim.status_code == 200
    data = claim.json()["data"]
    assert data["job"]["id"] == job_id
    assert data["job"]["status"] == "claimed"
    assert data["job"]["payload_ref"] == "shoot/clip.mov"
    assert data["content_root"].endswith("/spaces/projects")

    progress = client.put(
        f"/api/v1/worker/jobs/{job_id}/progress",
        json={"worker_id": "worker-a", "stage": "processing"},
        headers=AUTH,
    )
    assert progress.status_code == 200
    assert progress.json() == {"data": {"ok": True}}

    heartbeat = client.put(f"/api/v1/worker/jobs/{job_id}/heartbeat", json={"worker_id": "worker-a"}, headers=AUTH)
    assert heartbeat.status_code == 200

    complete = client.put(
        f"/api/v1/worker/jobs/{job_id}/complete",
        json={
            "worker_id": "worker-a",
            "result": {
                "kind": "full",
                "proxy_status": "ready",
                "metadata": {"codec": "h264"},
                "thumbnail_path": "proxies/projects/1/clip_thumb.jpg",
                "proxy_path": "proxies/projects/1/clip_proxy.mp4",
            },
        },
        headers=AUTH,
    )
    assert complete.status_code == 200

    job = client.get(f"/api/v1/catalog/jobs/{job_id}")
    assert job.status_code == 200
    assert job.json()["status"] == "completed"
    assert job.json()["worker_id"] is None

    late_fail = client.put(
        f"/api/v1/worker/jobs/{job_id}/fail",
        json={"worker_id": "worker-a", "error": "too late"},
        headers=AUTH,
    )
    assert late_fail.status_code == 404


def test_reports_from_non_owner_are_rejected(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    job_id = _enqueue(client, _create_asset())
    client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)

    heartbeat = client.put(f"/api/v1/worker/jobs/{job_id}/heartbeat", json={"worker_id": "worker-b"}, headers=AUTH)
    assert heartbeat.status_code == 404
    fail = client.put(
        f"/api/v1/worker/jobs/{job_id}/fail",
        json={"worker_id": "worker-b", "error": "nope"},
        headers=AUTH,
    )
    assert fail.status_code == 404


def test_fail_requeues_job(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    job_id = _enqueue(client, _create_asset())
    client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)

    fail = client.put(
        f"/api/v1/worker/jobs/{job_id}/fail",
        json={"worker_id": "worker-a", "error": "ffmpeg exited with code 1"},
        headers=AUTH,
    )
    assert fail.status_code == 200

    job = client.get(f"/api/v1/catalog/jobs/{job_id}").json()
    assert job["status"] == "pending"
    assert job["error_message"] == "ffmpeg exited with code 1"


def test_malformed_or_mismatched_results_are_unprocessable(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    job_id = _enqueue(client, _create_asset(), job_kind="metadata")
    client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)

    unknown_kind = client.put(
        f"/api/v1/worker/jobs/{job_id}/complete",
        json={"worker_id": "worker-a", "result": {"kind": "bogus"}},
        headers=AUTH,
    )
    assert unknown_kind.status_code == 422

    wrong_kind = client.put(
        f"/api/v1/worker/jobs/{job_id}/complete",
        json={"worker_id": "worker-a", "result": {"kind": "proxy", "proxy_status": "ready"}},
        headers=AUTH,
    )
    assert wrong_kind.status_code == 422

    not_owner = client.put(
        f"/api/v1/worker/jobs/{job_id}/complete",
        json={"worker_id": "worker-b", "result": {"kind": "proxy", "proxy_status": "ready"}},
        headers=AUTH,
    )
    assert not_owner.status_code == 404

    job = client.get(f"/api/v1/catalog/jobs/{job_id}").json()
    assert job["status"] == "claimed"


def test_status_and_stats_report_queue_depth(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    _enqueue(client, _create_asset("a.mov"))
    _enqueue(client, _create_asset("b.mov"))
    client.post("/api/v1/worker/jobs/claim", json={"worker_id": "worker-a"}, headers=AUTH)

    status_response = client.get("/api/v1/worker/status", headers=AUTH)
    assert status_response.status_code == 200
    queue = status_response.json()["queue"]
    assert queue["pending"] == 1
    assert queue["claimed"] == 1
    assert queue["in_flight"] == 1
    assert status_response.json()["stale_timeout_seconds"] == 300

    stats = client.get("/api/v1/catalog/jobs/stats").json()
    assert stats["pending"] == 1


def test_catalog_operator_endpoints(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    asset_id = _create_asset("a.mov")
    _create_asset("b.mov")

    queued = client.post("/api/v1/catalog/spaces/projects/queue", json={"job_kind": "proxy"})
    assert queued.status_code == 200
    assert queued.json() == {"space_name": "projects", "job_kind": "proxy", "queued": 2}

    duplicate = client.post(f"/api/v1/catalog/assets/{asset_id}/jobs")
    assert duplicate.status_code == 200
    assert duplicate.json() == {"queued": False, "job": None}

    listing = client.get(f"/api/v1/catalog/assets/{asset_id}/jobs")
    assert listing.status_code == 200
    assert [item["job_kind"] for item in listing.json()["items"]] == ["proxy"]

    assert client.post("/api/v1/catalog/assets/9999/jobs").status_code == 404
    assert client.get("/api/v1/catalog/jobs/9999").status_code == 404

    expired = client.post("/api/v1/catalog/jobs/expire-stale")
    assert expired.status_code == 200
    assert expired.json() == {"expired": 0}


def test_health_endpoint(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["worker_api_enabled"] is True
    assert response.json()["reaper_running"] is False
    assert response.json()["pending_jobs"] == 0


def test_health_reports_reaper_started_by_lifespan(tmp_path: Path) -> None:
    _prepare_env(tmp_path)
    os.environ["CATALOGQ_REAPER_ENABLED"] = "true"
    get_settings.cache_clear()
    try:
        with TestClient(create_app()) as client:
            _enqueue(client, _create_asset())
            body = client.get("/api/v1/health").json()
            assert body["reaper_running"] is True
            assert body["pending_jobs"] == 1
            reaper = client.app.state.reaper
        assert reaper.running is False
    finally:
        os.environ["CATALOGQ_REAPER_ENABLED"] = "false"
        get_settings.cache_clear()
