"""Move task state model."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class MoveStatus(str, Enum):
    """Lifecycle states of a move task."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    FINISHING = "finishing"
    DELETING = "deleting"
    PAUSED = "paused"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


# Statuses that occupy a concurrency slot.
ACTIVE_STATUSES = frozenset({MoveStatus.DOWNLOADING, MoveStatus.UPLOADING})
IN_PROGRESS_STATUSES = frozenset(
    {MoveStatus.DOWNLOADING, MoveStatus.UPLOADING, MoveStatus.FINISHING, MoveStatus.DELETING}
)
TERMINAL_STATUSES = frozenset({MoveStatus.SUCCESS, MoveStatus.ERROR, MoveStatus.CANCELLED})


def map_status(value: Optional[str]) -> MoveStatus:
    """Coerce a stored status string; unknown values read as ``pending``."""
    try:
        return MoveStatus(value)
    except ValueError:
        return MoveStatus.PENDING


def derive_phase(status: MoveStatus, existing: Optional[str] = None) -> str:
    """Return the display phase for ``status``.

    Finished tasks keep the last phase they were in.
    """
    if status in IN_PROGRESS_STATUSES:
        return status.value
    if status in TERMINAL_STATUSES:
        return existing or MoveStatus.UPLOADING.value
    return existing or MoveStatus.PENDING.value


class MoveTask(BaseModel):
    """A persisted object relocation.

    Attributes:
        id: Unique task id (``move-{epoch_ms}-{index}``).
        source_key: Key in the source bucket.
        dest_key: Key in the destination bucket.
        source_bucket: Source bucket.
        source_account_id: Source account.
        source_provider: Source provider tag.
        dest_bucket: Destination bucket.
        dest_account_id: Destination account.
        dest_provider: Destination provider tag.
        delete_original: Delete the source once the copy is in place.
        file_size: Object size in bytes (0 when unknown at enqueue time).
        progress: Percent complete, 0-100.
        transferred_bytes: Bytes written to the destination.
        status: Lifecycle state.
        error: Failure message for ``error`` tasks.
        upload_id: Multipart upload id kept for resuming large moves.
        cleanup_error: Last failure deleting the source after a successful copy.
        cleanup_attempts: Source delete attempts made so far.
        created_at: Unix seconds at enqueue.
        updated_at: Unix seconds of the last persisted change.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    source_key: str
    dest_key: str
    source_bucket: str
    source_account_id: str
    source_provider: str
    dest_bucket: str
    dest_account_id: str
    dest_provider: str
    delete_original: bool = False
    file_size: int = 0
    progress: int = 0
    transferred_bytes: int = 0
    status: MoveStatus = MoveStatus.PENDING
    error: Optional[str] = None
    upload_id: Optional[str] = None
    cleanup_error: Optional[str] = None
    cleanup_attempts: int = 0
    created_at: int = 0
    updated_at: int = 0

    @property
    def source_registry_key(self) -> str:
        return f"{self.source_provider}:{self.source_account_id}:{self.source_bucket}"

    @property
    def dest_registry_key(self) -> str:
        return f"{self.dest_provider}:{self.dest_account_id}:{self.dest_bucket}"

    @property
    def queue_key(self) -> str:
        return f"{self.source_account_id}:{self.source_bucket}"


__all__ = [
    "MoveStatus",
    "MoveTask",
    "ACTIVE_STATUSES",
    "IN_PROGRESS_STATUSES",
    "TERMINAL_STATUSES",
    "map_status",
    "derive_phase",
]
