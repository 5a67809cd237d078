from __future__ import annotations

import logging
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    resolved_level = logging.getLevelName(level.upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    if not any(getattr(handler, "_catalogq_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._catalogq_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(resolved_level)
    # Access logs from the HTTP client are noisy at the worker's poll rate.
    logging.getLogger("httpx").setLevel(max(resolved_level, logging.WARNING))
