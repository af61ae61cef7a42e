"""Download task state model."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DownloadStatus(str, Enum):
    """Lifecycle states of a download task."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = frozenset(
    {DownloadStatus.COMPLETED, DownloadStatus.FAILED, DownloadStatus.CANCELLED}
)
RESUMABLE_STATUSES = frozenset(
    {DownloadStatus.PAUSED, DownloadStatus.FAILED, DownloadStatus.CANCELLED}
)


class DownloadTask(BaseModel):
    """A persisted download of one object into a local folder.

    Attributes:
        id: Unique task id (``download-{epoch_ms}-{suffix}``).
        object_key: Key of the object in the bucket.
        file_name: Name of the file written under ``local_path``.
        file_size: Object size in bytes (0 until known).
        downloaded_bytes: Bytes already on disk.
        local_path: Destination folder.
        bucket: Source bucket.
        account_id: Source account.
        status: Lifecycle state.
        error: Failure message for ``failed`` tasks.
        created_at: Unix seconds at enqueue.
        updated_at: Unix seconds of the last persisted change.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    object_key: str
    file_name: str
    file_size: int = 0
    downloaded_bytes: int = 0
    local_path: str
    bucket: str
    account_id: str
    status: DownloadStatus = DownloadStatus.PENDING
    error: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def destination(self) -> Path:
        return Path(self.local_path).expanduser() / self.file_name

    @property
    def progress(self) -> int:
        if self.file_size <= 0:
            return 0
        return min(100, self.downloaded_bytes * 100 // self.file_size)


__all__ = ["DownloadStatus", "DownloadTask", "FINISHED_STATUSES", "RESUMABLE_STATUSES"]
