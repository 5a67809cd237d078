from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AssetType(str, Enum):
    GENERIC = "generic"
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"
    AVID_MXF = "avid_mxf"
    SEQUENCE = "sequence"


class ProxyStatus(str, Enum):
    NONE = "none"
    QUEUED = "queued"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


class JobKind(str, Enum):
    FULL = "full"
    PROXY = "proxy"
    METADATA = "metadata"


class JobStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = (JobStatus.CLAIMED, JobStatus.PROCESSING)
NON_TERMINAL_JOB_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, *ACTIVE_JOB_STATUSES)


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    space_name: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(1024), nullable=False)
    asset_type: Mapped[AssetType] = mapped_column(
        SAEnum(AssetType, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=AssetType.GENERIC,
    )
    primary_file_path: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    is_archive_stub: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    proxy_status: Mapped[ProxyStatus] = mapped_column(
        SAEnum(ProxyStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=ProxyStatus.NONE,
    )
    thumbnail_path: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    proxy_path: Mapped[str | None] = mapped_column(String(4096), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON(none_as_null=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_assets_space", "space_name"),
        Index("ix_assets_space_proxy_status", "space_name", "proxy_status"),
    )


class CatalogJob(Base):
    __tablename__ = "catalog_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    space_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_ref: Mapped[str] = mapped_column(String(4096), nullable=False)
    asset_type: Mapped[AssetType] = mapped_column(
        SAEnum(AssetType, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    job_kind: Mapped[JobKind] = mapped_column(
        SAEnum(JobKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobKind.FULL,
    )
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_catalog_jobs_status_created", "status", "created_at", "id"),
        Index("ix_catalog_jobs_status_updated", "status", "updated_at"),
        Index("ix_catalog_jobs_asset", "asset_id"),
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
