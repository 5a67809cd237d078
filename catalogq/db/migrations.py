from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    indexes = inspector.get_indexes(table_name)
    return any(index.get("name") == index_name for index in indexes)


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_active_asset_jobs(conn: Connection) -> None:
    # Keep the newest non-terminal job per asset; older duplicates become terminal failures.
    conn.execute(
        text(
            """
            UPDATE catalog_jobs
            SET status = 'failed',
                worker_id = NULL,
                error_message = COALESCE(error_message, 'superseded by newer job for the same asset'),
                completed_at = CURRENT_TIMESTAMP,
                updated_at = CURRENT_TIMESTAMP
            WHERE status IN ('pending', 'claimed', 'processing')
              AND id NOT IN (
                SELECT MAX(id)
                FROM catalog_jobs
                WHERE status IN ('pending', 'claimed', 'processing')
                GROUP BY asset_id
              )
            """
        )
    )


def _migration_0002_single_active_job_per_asset(conn: Connection) -> None:
    if not _table_exists(conn, "catalog_jobs"):
        return

    if _index_exists(conn, "catalog_jobs", "ix_catalog_jobs_single_active_asset"):
        return

    _resolve_duplicate_active_asset_jobs(conn)
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ix_catalog_jobs_single_active_asset "
            "ON catalog_jobs (asset_id) WHERE status IN ('pending', 'claimed', 'processing')"
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="single_active_job_per_asset",
        apply=_migration_0002_single_active_job_per_asset,
    ),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
