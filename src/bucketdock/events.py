"""In-process publish/subscribe channel for backend progress and status events.

Listeners are registered on the bus owned by the application root rather than
on a particular request, so progress keeps flowing to any subscriber for as
long as the bus lives.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

LOGGER = logging.getLogger(__name__)

SYNC_PHASE = "sync-phase"
SYNC_PROGRESS = "sync-progress"
INDEXING_PROGRESS = "indexing-progress"
CACHE_UPDATED = "cache-updated"
PATHS_REMOVED = "paths-removed"
PATHS_CREATED = "paths-created"
MOVE_PROGRESS = "move-progress"
MOVE_STATUS_CHANGED = "move-status-changed"
MOVE_TASK_DELETED = "move-task-deleted"
MOVE_BATCH_OPERATION = "move-batch-operation"
BATCH_MOVE_PROGRESS = "batch-move-progress"
BATCH_DELETE_PROGRESS = "batch-delete-progress"
UPLOAD_PROGRESS = "upload-progress"
UPLOAD_STATUS_CHANGED = "upload-status-changed"
DOWNLOAD_PROGRESS = "download-progress"
DOWNLOAD_STATUS_CHANGED = "download-status-changed"
DOWNLOAD_TASK_DELETED = "download-task-deleted"
DOWNLOAD_BATCH_OPERATION = "download-batch-operation"


class Event(BaseModel):
    """Base class for event payloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class SyncPhaseEvent(Event):
    account_id: str
    bucket: str
    phase: str


class SyncProgressEvent(Event):
    account_id: str
    bucket: str
    count: int


class IndexingProgressEvent(Event):
    account_id: str
    bucket: str
    current: int
    total: int


class CacheUpdatedEvent(Event):
    account_id: str
    bucket: str
    action: str
    affected_paths: list[str] = Field(default_factory=list)


class PathsRemovedEvent(Event):
    account_id: str
    bucket: str
    removed_paths: list[str]


class PathsCreatedEvent(Event):
    account_id: str
    bucket: str
    created_paths: list[str]


class MoveProgressEvent(Event):
    task_id: str
    phase: str
    percent: int
    transferred_bytes: int
    total_bytes: int
    speed: float = 0.0


class MoveStatusChangedEvent(Event):
    task_id: str
    status: str
    error: Optional[str] = None


class MoveTaskDeletedEvent(Event):
    task_id: str


class MoveBatchOperationEvent(Event):
    operation: str
    source_bucket: str
    source_account_id: str


class BatchProgressEvent(Event):
    account_id: str
    bucket: str
    processed: int
    total: int


class UploadProgressEvent(Event):
    task_id: str
    percent: int
    uploaded_bytes: int
    total_bytes: int
    speed: float = 0.0


class UploadStatusChangedEvent(Event):
    task_id: str
    status: str
    error: Optional[str] = None


class DownloadProgressEvent(Event):
    task_id: str
    percent: int
    downloaded_bytes: int
    total_bytes: int
    speed: float = 0.0


class DownloadStatusChangedEvent(Event):
    task_id: str
    status: str
    error: Optional[str] = None


class DownloadTaskDeletedEvent(Event):
    task_id: str


class DownloadBatchOperationEvent(Event):
    operation: str
    bucket: str
    account_id: str


Handler = Callable[[str, Event], None]


class EventBus:
    """Thread-safe named-event broadcaster.

    Handlers receive ``(name, payload)``. A handler that raises is logged and
    does not prevent delivery to the remaining subscribers.
    """

    WILDCARD = "*"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``name`` (or ``"*"`` for every event).

        Returns:
            Callable[[], None]: Function that removes the subscription.
        """
        with self._lock:
            self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(name, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def emit(self, name: str, payload: Event) -> None:
        """Deliver ``payload`` to subscribers of ``name`` and wildcard subscribers."""
        with self._lock:
            targets = [*self._handlers.get(name, ()), *self._handlers.get(self.WILDCARD, ())]
        for handler in targets:
            try:
                handler(name, payload)
            except Exception:  # noqa: BLE001 - subscriber failures must not break emitters
                LOGGER.exception("Event handler for %s failed", name)


__all__ = [
    "EventBus",
    "Event",
    "Handler",
    "SYNC_PHASE",
    "SYNC_PROGRESS",
    "INDEXING_PROGRESS",
    "CACHE_UPDATED",
    "PATHS_REMOVED",
    "PATHS_CREATED",
    "MOVE_PROGRESS",
    "MOVE_STATUS_CHANGED",
    "MOVE_TASK_DELETED",
    "MOVE_BATCH_OPERATION",
    "BATCH_MOVE_PROGRESS",
    "BATCH_DELETE_PROGRESS",
    "UPLOAD_PROGRESS",
    "UPLOAD_STATUS_CHANGED",
    "DOWNLOAD_PROGRESS",
    "DOWNLOAD_STATUS_CHANGED",
    "DOWNLOAD_TASK_DELETED",
    "DOWNLOAD_BATCH_OPERATION",
    "SyncPhaseEvent",
    "SyncProgressEvent",
    "IndexingProgressEvent",
    "CacheUpdatedEvent",
    "PathsRemovedEvent",
    "PathsCreatedEvent",
    "MoveProgressEvent",
    "MoveStatusChangedEvent",
    "MoveTaskDeletedEvent",
    "MoveBatchOperationEvent",
    "BatchProgressEvent",
    "UploadProgressEvent",
    "UploadStatusChangedEvent",
    "DownloadProgressEvent",
    "DownloadStatusChangedEvent",
    "DownloadTaskDeletedEvent",
    "DownloadBatchOperationEvent",
]
