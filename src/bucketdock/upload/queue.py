"""In-memory queue of upload tasks with bounded parallelism."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from itertools import count
from pathlib import Path
from typing import Iterable, Optional

from bucketdock.cache import CacheError, CacheStore
from bucketdock.events import (
    UPLOAD_PROGRESS,
    UPLOAD_STATUS_CHANGED,
    EventBus,
    UploadProgressEvent,
    UploadStatusChangedEvent,
)
from bucketdock.providers import ProviderError, StorageConfig, StorageObject

from .engine import UploadEngine
from .errors import UploadCancelledError, UploadError
from .models import UploadProgress, UploadStatus, UploadTask

LOGGER = logging.getLogger(__name__)

_FINISHED = frozenset({UploadStatus.SUCCESS, UploadStatus.ERROR, UploadStatus.CANCELLED})


class UploadQueue:
    """Run queued uploads through an :class:`UploadEngine`.

    Tasks live only in memory; multipart progress survives restarts through
    the engine's session store instead.
    """

    def __init__(
        self,
        engine: UploadEngine,
        events: EventBus,
        *,
        max_concurrent_uploads: int = 3,
        cache: Optional[CacheStore] = None,
    ) -> None:
        self._engine = engine
        self._events = events
        self._cache = cache
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent_uploads, thread_name_prefix="upload")
        self._lock = threading.Lock()
        self._tasks: dict[str, UploadTask] = {}
        self._configs: dict[str, StorageConfig] = {}
        self._cancels: dict[str, threading.Event] = {}
        self._futures: dict[str, Future] = {}
        self._ids = count(1)

    def add_files(
        self,
        config: StorageConfig,
        files: Iterable[tuple[Path | str, str]],
        *,
        content_type: Optional[str] = None,
    ) -> list[UploadTask]:
        """Queue ``(local_path, object_key)`` pairs as ``pending`` tasks."""
        added: list[UploadTask] = []
        stamp = int(time.time() * 1000)
        with self._lock:
            for path, key in files:
                source = Path(path).expanduser()
                task = UploadTask(
                    id=f"upload-{stamp}-{next(self._ids)}",
                    file_path=source,
                    file_name=source.name,
                    file_size=source.stat().st_size if source.exists() else 0,
                    object_key=key,
                    account_id=config.account_id,
                    bucket=config.bucket,
                    content_type=content_type,
                )
                self._tasks[task.id] = task
                self._configs[task.id] = config
                added.append(task)
        return added

    def start(self) -> list[str]:
        """Submit every pending task; returns the ids started."""
        started: list[str] = []
        with self._lock:
            for task in self._tasks.values():
                if task.status != UploadStatus.PENDING or task.id in self._futures:
                    continue
                cancel = threading.Event()
                self._cancels[task.id] = cancel
                self._futures[task.id] = self._pool.submit(self._run, task.id, cancel)
                started.append(task.id)
        return started

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status in _FINISHED:
                return False
            cancel = self._cancels.get(task_id)
            if cancel is not None:
                cancel.set()
            if task.status == UploadStatus.PENDING:
                future = self._futures.pop(task_id, None)
                if future is not None:
                    future.cancel()
        self._set_status(task_id, UploadStatus.CANCELLED)
        return True

    def cancel_all(self) -> int:
        with self._lock:
            ids = [task.id for task in self._tasks.values() if task.status not in _FINISHED]
        return sum(1 for task_id in ids if self.cancel(task_id))

    def clear_finished(self) -> list[str]:
        with self._lock:
            ids = [task.id for task in self._tasks.values() if task.status in _FINISHED]
            for task_id in ids:
                self._tasks.pop(task_id, None)
                self._configs.pop(task_id, None)
                self._cancels.pop(task_id, None)
                self._futures.pop(task_id, None)
        return ids

    def tasks(self) -> list[UploadTask]:
        with self._lock:
            return [task.model_copy() for task in self._tasks.values()]

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every started task finished; ``False`` on timeout."""
        with self._lock:
            futures = list(self._futures.values())
        _, pending = wait(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        self.cancel_all()
        self._pool.shutdown(wait=wait)

    def _run(self, task_id: str, cancel: threading.Event) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            config = self._configs.get(task_id)
        if task is None or config is None or cancel.is_set():
            return
        self._set_status(task_id, UploadStatus.UPLOADING)

        def _progress(progress: UploadProgress) -> None:
            with self._lock:
                current = self._tasks.get(task_id)
                if current is not None:
                    current.progress = max(current.progress, progress.percent)
                    current.uploaded_bytes = max(current.uploaded_bytes, progress.uploaded_bytes)
                    current.speed = progress.speed
            self._events.emit(
                UPLOAD_PROGRESS,
                UploadProgressEvent(
                    task_id=task_id,
                    percent=progress.percent,
                    uploaded_bytes=progress.uploaded_bytes,
                    total_bytes=progress.total_bytes,
                    speed=progress.speed,
                ),
            )

        try:
            result = self._engine.upload_file(
                config,
                task.file_path,
                task.object_key,
                content_type=task.content_type,
                cancel_event=cancel,
                on_progress=_progress,
            )
        except UploadCancelledError:
            self._set_status(task_id, UploadStatus.CANCELLED)
            return
        except (UploadError, ProviderError) as exc:
            LOGGER.warning("Upload %s failed: %s", task_id, exc)
            self._set_status(task_id, UploadStatus.ERROR, str(exc))
            return

        self._set_status(task_id, UploadStatus.SUCCESS)
        if self._cache is not None:
            stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            try:
                self._cache.apply_upsert(
                    config.account_id,
                    config.bucket,
                    [StorageObject(key=result.key, size=result.size, last_modified=stamp, etag=result.etag or "")],
                )
            except CacheError as exc:
                LOGGER.error("Cache update after upload %s failed: %s", task_id, exc)

    def _set_status(self, task_id: str, status: UploadStatus, error: Optional[str] = None) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            if task.status in (UploadStatus.SUCCESS, UploadStatus.CANCELLED) and task.status != status:
                return
            task.status = status
            task.error = error
            if status != UploadStatus.UPLOADING:
                task.speed = 0.0
            if status == UploadStatus.SUCCESS:
                task.progress = 100
                task.uploaded_bytes = task.file_size
        self._events.emit(
            UPLOAD_STATUS_CHANGED,
            UploadStatusChangedEvent(task_id=task_id, status=status.value, error=error),
        )


__all__ = ["UploadQueue"]
