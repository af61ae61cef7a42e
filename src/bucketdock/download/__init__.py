"""Download queue: persisted tasks, ranged resume, and scheduling."""

from .errors import DownloadError, DownloadInterrupted, DownloadQueueBusyError, DownloadTaskNotFoundError
from .models import FINISHED_STATUSES, RESUMABLE_STATUSES, DownloadStatus, DownloadTask
from .queue import DownloadQueue
from .repository import DownloadSessionRepository
from .worker import DownloadControl, DownloadWorker

__all__ = [
    "DownloadQueue",
    "DownloadWorker",
    "DownloadControl",
    "DownloadSessionRepository",
    "DownloadStatus",
    "DownloadTask",
    "FINISHED_STATUSES",
    "RESUMABLE_STATUSES",
    "DownloadError",
    "DownloadTaskNotFoundError",
    "DownloadQueueBusyError",
    "DownloadInterrupted",
]
