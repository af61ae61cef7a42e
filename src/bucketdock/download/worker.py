"""Execution of a single download task: ranged resume into a local file."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import closing
from typing import Iterable, Optional

from bucketdock.events import (
    DOWNLOAD_PROGRESS,
    DOWNLOAD_STATUS_CHANGED,
    DownloadProgressEvent,
    DownloadStatusChangedEvent,
    EventBus,
)
from bucketdock.providers import ObjectNotFoundError, ProviderError, StorageAdapter

from .errors import DownloadInterrupted
from .models import DownloadStatus, DownloadTask
from .repository import DownloadSessionRepository

LOGGER = logging.getLogger(__name__)

KB = 1024
MB = 1024 * KB


class DownloadControl:
    """Cooperative stop signal shared between the queue and a running download."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def request(self, reason: str) -> None:
        self.reason = reason
        self._event.set()

    @property
    def stopped(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise DownloadInterrupted(self.reason or DownloadStatus.CANCELLED.value)


class DownloadStatusPublisher:
    """Persist status transitions and broadcast ``download-status-changed``."""

    def __init__(self, repository: DownloadSessionRepository, events: EventBus) -> None:
        self._repository = repository
        self._events = events

    def publish(
        self,
        task_id: str,
        status: DownloadStatus,
        *,
        expected: Optional[Iterable[DownloadStatus]] = None,
        error: Optional[str] = None,
        **fields,
    ) -> bool:
        changed = self._repository.transition(task_id, status, expected=expected, error=error, **fields)
        if changed:
            self._events.emit(
                DOWNLOAD_STATUS_CHANGED,
                DownloadStatusChangedEvent(task_id=task_id, status=status.value, error=error),
            )
        return changed


class DownloadWorker:
    """Carry one download task from ``downloading`` to ``completed``.

    Bytes already present in the destination file are kept and only the
    remainder is requested with a ranged read. Received chunks are buffered
    and written out every ``write_buffer_size`` bytes; each write persists
    ``downloaded_bytes`` and emits a progress event, so a paused task resumes
    from its last flushed offset.
    """

    def __init__(
        self,
        repository: DownloadSessionRepository,
        events: EventBus,
        *,
        write_buffer_size: int = 2 * MB,
        chunk_size: int = 256 * KB,
    ) -> None:
        self._repository = repository
        self._events = events
        self._status = DownloadStatusPublisher(repository, events)
        self._write_buffer_size = write_buffer_size
        self._chunk_size = chunk_size

    def run(self, task: DownloadTask, adapter: StorageAdapter, control: DownloadControl) -> None:
        """Download ``task`` and mark it ``completed``.

        Args:
            task: Task already transitioned to ``downloading``.
            adapter: Adapter for the task's bucket.
            control: Pause/cancel signal checked between chunks.

        Raises:
            DownloadInterrupted: If the task was paused or cancelled mid-flight.
            ProviderError: If the object is missing or its stream ends early.
            OSError: If the destination cannot be written.
        """
        total = task.file_size
        if total <= 0:
            head = adapter.head_object(task.object_key)
            if head is None:
                raise ObjectNotFoundError(f"Object not found: {task.object_key}")
            total = head.size
            self._repository.update_fields(task.id, file_size=total)

        target = task.destination
        target.parent.mkdir(parents=True, exist_ok=True)
        existing = target.stat().st_size if target.exists() else 0
        if existing > total:
            LOGGER.info("Partial file for %s is larger than the object; starting over", task.id)
            existing = 0

        written = existing
        started = time.monotonic()
        self._emit(task.id, written, total, 0.0)
        try:
            control.check()
            buffer = bytearray()
            with open(target, "ab" if existing else "wb") as handle:
                try:
                    if existing < total:
                        byte_range = (existing, total - 1) if existing else None
                        with closing(adapter.open_object(task.object_key, byte_range)) as body:
                            while True:
                                control.check()
                                chunk = body.read(self._chunk_size)
                                if not chunk:
                                    break
                                buffer += chunk
                                if len(buffer) >= self._write_buffer_size:
                                    handle.write(buffer)
                                    written += len(buffer)
                                    buffer.clear()
                                    self._checkpoint(task.id, written, total, existing, started)
                finally:
                    if buffer:
                        handle.write(buffer)
                        written += len(buffer)
                        buffer.clear()

            if written != total:
                raise ProviderError(f"Download of {task.object_key} ended at {written} of {total} bytes")
            control.check()
            self._emit(task.id, total, total, 0.0)
            if not self._status.publish(
                task.id,
                DownloadStatus.COMPLETED,
                expected={DownloadStatus.DOWNLOADING},
                downloaded_bytes=total,
                file_size=total,
            ):
                # Paused or cancelled between the last chunk and settling.
                control.check()
        except DownloadInterrupted as exc:
            if exc.status == DownloadStatus.CANCELLED.value:
                target.unlink(missing_ok=True)
            else:
                self._repository.update_fields(task.id, downloaded_bytes=written)
                self._emit(task.id, written, total, 0.0)
            raise
        LOGGER.info("Downloaded %s to %s", task.object_key, target)

    def _checkpoint(self, task_id: str, written: int, total: int, existing: int, started: float) -> None:
        elapsed = time.monotonic() - started
        speed = (written - existing) / elapsed if elapsed > 0 else 0.0
        self._repository.update_fields(task_id, downloaded_bytes=written)
        self._emit(task_id, written, total, speed)

    def _emit(self, task_id: str, written: int, total: int, speed: float) -> None:
        percent = min(100, written * 100 // total) if total > 0 else 100
        self._events.emit(
            DOWNLOAD_PROGRESS,
            DownloadProgressEvent(
                task_id=task_id,
                percent=percent,
                downloaded_bytes=written,
                total_bytes=total,
                speed=speed,
            ),
        )


__all__ = ["DownloadWorker", "DownloadControl", "DownloadStatusPublisher", "KB", "MB"]
