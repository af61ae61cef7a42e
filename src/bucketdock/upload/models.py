"""Upload session, task, and progress models."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SessionStatus(str, Enum):
    """Persisted state of a resumable multipart upload."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


RESUMABLE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.UPLOADING, SessionStatus.CANCELLED})
FINISHED_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class UploadStatus(str, Enum):
    """Lifecycle of an in-memory upload task."""

    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class UploadModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UploadFingerprint(UploadModel):
    """Identity of a local file bound for one destination key.

    A persisted session is only resumed when every field matches.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    bucket: str
    object_key: str
    file_name: str
    file_size: int
    file_mtime: int


class UploadSession(UploadModel):
    """Persisted multipart upload state."""

    id: str
    file_path: str
    file_name: str
    file_size: int
    file_mtime: int
    object_key: str
    bucket: str
    account_id: str
    upload_id: str
    content_type: Optional[str] = None
    total_parts: int
    status: SessionStatus = SessionStatus.PENDING
    created_at: int = 0
    updated_at: int = 0

    @property
    def fingerprint(self) -> UploadFingerprint:
        return UploadFingerprint(
            account_id=self.account_id,
            bucket=self.bucket,
            object_key=self.object_key,
            file_name=self.file_name,
            file_size=self.file_size,
            file_mtime=self.file_mtime,
        )


class UploadProgress(UploadModel):
    uploaded_bytes: int
    total_bytes: int
    percent: int
    speed: float = 0.0


class UploadResult(UploadModel):
    """Outcome of a finished upload.

    Attributes:
        key: Destination key.
        size: Bytes in the uploaded object.
        multipart: Whether the multipart path was used.
        resumed_parts: Parts reused from a previous session.
        etag: ETag of a single-request upload (multipart uploads report ``None``).
    """

    key: str
    size: int
    multipart: bool = False
    resumed_parts: int = 0
    etag: Optional[str] = None


class UploadTask(UploadModel):
    """An ephemeral queued upload; not persisted across runs."""

    id: str
    file_path: Path
    file_name: str
    file_size: int
    object_key: str
    account_id: str
    bucket: str
    content_type: Optional[str] = None
    status: UploadStatus = UploadStatus.PENDING
    progress: int = 0
    uploaded_bytes: int = 0
    speed: float = 0.0
    error: Optional[str] = None


class LocalFileInfo(UploadModel):
    path: Path
    name: str
    size: int
    modified: int


class FolderFile(UploadModel):
    """A file found under an upload folder.

    Attributes:
        path: Absolute path on disk.
        relative_key: Path relative to the folder, ``/``-separated.
        size: File size in bytes.
    """

    path: Path
    relative_key: str
    size: int


__all__ = [
    "SessionStatus",
    "RESUMABLE_STATUSES",
    "FINISHED_SESSION_STATUSES",
    "UploadStatus",
    "UploadFingerprint",
    "UploadSession",
    "UploadProgress",
    "UploadResult",
    "UploadTask",
    "LocalFileInfo",
    "FolderFile",
]
