from __future__ import annotations

import logging
import threading

from catalogq.jobs.service import JobStore

logger = logging.getLogger(__name__)


class StaleJobReaper:
    """Periodically returns jobs whose worker stopped heartbeating to the queue."""

    def __init__(self, store: JobStore, *, interval_seconds: float, timeout_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than zero")
        self._store = store
        self._interval_seconds = interval_seconds
        self._timeout_seconds = timeout_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        return self._store.expire_stale(self._timeout_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="catalogq-reaper", daemon=True)
        self._thread.start()
        logger.info(
            "Stale job reaper started (interval=%ss, timeout=%ss)",
            self._interval_seconds,
            self._timeout_seconds,
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self.run_once()
            except Exception:
                # Keep sweeping; a locked database or similar clears on the next tick.
                logger.exception("Stale job sweep failed")
