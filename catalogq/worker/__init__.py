from catalogq.worker.client import ManagerClient, ManagerRequestError, ManagerUnavailableError
from catalogq.worker.loop import WorkerLoop
from catalogq.worker.processor import MediaJobProcessor

__all__ = [
    "ManagerClient",
    "ManagerRequestError",
    "ManagerUnavailableError",
    "WorkerLoop",
    "MediaJobProcessor",
]
