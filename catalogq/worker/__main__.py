from __future__ import annotations

import argparse
import logging
import signal
import sys
from types import FrameType

from catalogq.core.config import WorkerSettings, check_heartbeat_margin, get_worker_settings
from catalogq.core.logging import configure_logging
from catalogq.worker.client import ManagerClient, ManagerRequestError, ManagerUnavailableError
from catalogq.worker.loop import WorkerLoop

logger = logging.getLogger("catalogq.worker")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a catalogq processing worker against a manager")
    parser.add_argument("--manager-url", default=None, help="Override CATALOGQ_WORKER_MANAGER_URL")
    parser.add_argument("--worker-id", default=None, help="Override CATALOGQ_WORKER_WORKER_ID")
    parser.add_argument("--max-concurrent-jobs", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--check",
        action="store_true",
        help="Verify the manager is reachable with the configured key and exit",
    )
    return parser.parse_args(argv)


def preflight(client: ManagerClient, settings: WorkerSettings) -> bool:
    """Confirm the manager answers and that our heartbeat outpaces its stale timeout."""
    try:
        status = client.fetch_status()
    except (ManagerUnavailableError, ManagerRequestError) as exc:
        logger.error("Manager at %s is not usable: %s", settings.manager_url, exc)
        return False
    try:
        check_heartbeat_margin(settings.heartbeat_interval_seconds, status.stale_timeout_seconds)
    except ValueError as exc:
        logger.error("Refusing to start: %s", exc)
        return False
    logger.info(
        "Manager %s (%s) reachable, %s jobs pending",
        status.service,
        status.environment,
        status.queue.pending,
    )
    return True


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_worker_settings()
    overrides = {
        "manager_url": args.manager_url,
        "worker_id": args.worker_id,
        "max_concurrent_jobs": args.max_concurrent_jobs,
        "log_level": args.log_level,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        settings = settings.model_validate({**settings.model_dump(), **overrides})

    configure_logging(settings.log_level)

    with ManagerClient(settings) as client:
        if not preflight(client, settings):
            return 1
        if args.check:
            return 0

        loop = WorkerLoop(client, settings)

        def _handle_signal(signum: int, _frame: FrameType | None) -> None:
            logger.info("Received %s, stopping worker", signal.Signals(signum).name)
            loop.request_stop()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

        try:
            loop.run()
        finally:
            abandoned = loop.stop()
    return 0 if abandoned == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
