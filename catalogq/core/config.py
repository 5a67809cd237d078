from __future__ import annotations

import socket
from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# The reaper timeout must leave room for several missed heartbeats.
STALE_TIMEOUT_HEARTBEAT_FACTOR = 6


def _normalize_absolute_path(value: str | Path) -> Path:
    raw = str(value)
    if "~" in raw:
        raise ValueError("Home expansion syntax is not allowed in paths")
    if "$" in raw:
        raise ValueError("Environment variable syntax is not allowed in paths")
    path = Path(raw)
    if not path.is_absolute():
        raise ValueError("Path settings must be absolute")
    return path.resolve(strict=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CATALOGQ_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "catalogq"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    spaces_root: Path = Field(default=Path("/spaces"))
    catalog_data_path: Path = Field(default=Path("/state/catalog"))

    worker_api_key: str = ""

    job_max_attempts: PositiveInt = 3
    job_stale_timeout_seconds: PositiveInt = 300
    reaper_enabled: bool = True
    reaper_interval_seconds: PositiveInt = 60

    @field_validator("state_root", "spaces_root", "catalog_data_path", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        return _normalize_absolute_path(value)

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root.mkdir(parents=True, exist_ok=True)
        self.log_level = self.log_level.upper().strip()
        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "catalogq.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def worker_api_enabled(self) -> bool:
        return bool(self.worker_api_key)


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CATALOGQ_WORKER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    manager_url: str = "http://127.0.0.1:8080"
    api_key: str = ""
    worker_id: str = Field(default_factory=lambda: f"worker-{socket.gethostname()}")
    log_level: str = "INFO"

    max_concurrent_jobs: PositiveInt = 2
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=300.0, ge=0)
    request_timeout_seconds: float = Field(default=15.0, gt=0)

    ffprobe_bin: str = "ffprobe"
    exiftool_bin: str = "exiftool"
    ffmpeg_bin: str = "ffmpeg"
    probe_timeout_seconds: PositiveInt = 30
    thumbnail_timeout_seconds: PositiveInt = 60
    proxy_timeout_seconds: PositiveInt = 600

    @field_validator("manager_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError("manager_url must be an http(s) URL")
        return normalized

    @field_validator("worker_id")
    @classmethod
    def _validate_worker_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("worker_id cannot be blank")
        if len(normalized) > 128:
            raise ValueError("worker_id must be at most 128 characters")
        return normalized

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "WorkerSettings":
        self.log_level = self.log_level.upper().strip()
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=1)
def get_worker_settings() -> WorkerSettings:
    return WorkerSettings()


def check_heartbeat_margin(heartbeat_interval_seconds: float, stale_timeout_seconds: float) -> None:
    """Raise ``ValueError`` unless the stale timeout covers several missed heartbeats."""
    limit = stale_timeout_seconds / STALE_TIMEOUT_HEARTBEAT_FACTOR
    if heartbeat_interval_seconds > limit:
        raise ValueError(
            f"heartbeat interval {heartbeat_interval_seconds:g}s exceeds {limit:g}s: the manager expires "
            f"jobs after {stale_timeout_seconds:g}s and needs at least {STALE_TIMEOUT_HEARTBEAT_FACTOR}x margin"
        )
