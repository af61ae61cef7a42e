"""Download queue errors."""


class DownloadError(Exception):
    """Base exception for download queue operations."""


class DownloadTaskNotFoundError(DownloadError):
    """Raised when a download task id is unknown."""


class DownloadQueueBusyError(DownloadError):
    """Raised when an operation is refused because downloads are still running."""


class DownloadInterrupted(DownloadError):
    """Raised inside a running download when it was paused or cancelled."""

    def __init__(self, status: str) -> None:
        super().__init__(f"Download {status}")
        self.status = status
