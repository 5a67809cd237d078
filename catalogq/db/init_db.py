from __future__ import annotations

import logging

from sqlalchemy import text

from catalogq.core.config import get_settings
from catalogq.db.migrations import apply_migrations
from catalogq.db.models import Base
from catalogq.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> list[int]:
    """Create tables, apply pending migrations and make sure the catalog output root exists.

    Returns the migration versions applied by this call.
    """
    settings = get_settings()
    settings.catalog_data_path.mkdir(parents=True, exist_ok=True)

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)
    if applied:
        logger.info("Applied catalog schema migrations %s", applied)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return applied
