"""Local file uploads: resumable multipart engine, session store, and task queue."""

from .engine import UploadEngine
from .errors import UploadCancelledError, UploadError, UploadSessionNotFoundError
from .files import get_file_info, get_folder_files
from .models import (
    FolderFile,
    LocalFileInfo,
    SessionStatus,
    UploadFingerprint,
    UploadProgress,
    UploadResult,
    UploadSession,
    UploadStatus,
    UploadTask,
)
from .queue import UploadQueue
from .sessions import UploadSessionStore

__all__ = [
    "UploadEngine",
    "UploadQueue",
    "UploadSessionStore",
    "UploadError",
    "UploadCancelledError",
    "UploadSessionNotFoundError",
    "get_file_info",
    "get_folder_files",
    "FolderFile",
    "LocalFileInfo",
    "SessionStatus",
    "UploadFingerprint",
    "UploadProgress",
    "UploadResult",
    "UploadSession",
    "UploadStatus",
    "UploadTask",
]
