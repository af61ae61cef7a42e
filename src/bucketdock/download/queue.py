"""Persistent download queue with a per-bucket concurrency ceiling."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

from bucketdock.cache import CacheError, CacheStore, parse_key
from bucketdock.config.models import DownloadSettings
from bucketdock.events import (
    DOWNLOAD_BATCH_OPERATION,
    DOWNLOAD_STATUS_CHANGED,
    DOWNLOAD_TASK_DELETED,
    DownloadBatchOperationEvent,
    DownloadStatusChangedEvent,
    DownloadTaskDeletedEvent,
    EventBus,
)
from bucketdock.providers import AdapterFactory, ProviderError, StorageAdapter, StorageConfig, get_adapter

from .errors import DownloadError, DownloadInterrupted, DownloadQueueBusyError
from .models import FINISHED_STATUSES, RESUMABLE_STATUSES, DownloadStatus, DownloadTask
from .repository import DownloadSessionRepository
from .worker import KB, MB, DownloadControl, DownloadStatusPublisher, DownloadWorker

LOGGER = logging.getLogger(__name__)


def _scope_key(bucket: str, account_id: str) -> str:
    return f"{account_id}:{bucket}"


class DownloadQueue:
    """Schedule and control persisted downloads of objects to local folders.

    Each ``(account, bucket)`` scope runs at most ``max_concurrent_downloads``
    tasks at once. Taking a slot and flipping ``pending -> downloading``
    happen together under one lock; a finished run frees its slot and
    schedules the next pending task of its scope.
    """

    def __init__(
        self,
        repository: DownloadSessionRepository,
        events: EventBus,
        *,
        settings: Optional[DownloadSettings] = None,
        cache: Optional[CacheStore] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self._repository = repository
        self._events = events
        self._settings = settings or DownloadSettings()
        self._cache = cache
        self._adapter_factory = adapter_factory
        self._status = DownloadStatusPublisher(repository, events)
        self._worker = DownloadWorker(
            repository,
            events,
            write_buffer_size=self._settings.write_buffer_mb * MB,
            chunk_size=self._settings.chunk_size_kb * KB,
        )

        self._configs: dict[str, StorageConfig] = {}
        self._adapters: dict[str, StorageAdapter] = {}
        self._controls: dict[str, DownloadControl] = {}
        self._registry_lock = threading.Lock()
        self._slot_lock = threading.Lock()
        self._settled = threading.Condition()
        self._pool = ThreadPoolExecutor(thread_name_prefix="download")
        self._closed = False

    # ------------------------------------------------------------------ #
    # Registry                                                           #
    # ------------------------------------------------------------------ #

    def register_config(self, config: StorageConfig) -> None:
        key = _scope_key(config.bucket, config.account_id)
        with self._registry_lock:
            self._configs[key] = config
            self._adapters.pop(key, None)

    def _adapter_for(self, bucket: str, account_id: str) -> Optional[StorageAdapter]:
        key = _scope_key(bucket, account_id)
        with self._registry_lock:
            adapter = self._adapters.get(key)
            if adapter is None:
                config = self._configs.get(key)
                if config is None:
                    return None
                adapter = self._adapter_factory(config)
                self._adapters[key] = adapter
            return adapter

    # ------------------------------------------------------------------ #
    # Commands                                                           #
    # ------------------------------------------------------------------ #

    def create_download_task(
        self,
        config: StorageConfig,
        object_key: str,
        local_path: str,
        *,
        file_name: Optional[str] = None,
        file_size: int = 0,
        task_id: Optional[str] = None,
    ) -> DownloadTask:
        """Persist a ``pending`` download of ``object_key`` into ``local_path``.

        Args:
            config: Location the object is read from.
            object_key: Key of the object.
            local_path: Destination folder.
            file_name: Local file name; defaults to the key's last segment.
            file_size: Known object size; looked up in the cache when 0.
            task_id: Explicit task id.

        Returns:
            DownloadTask: The created task.
        """
        self.register_config(config)
        if not file_size and self._cache is not None:
            cached = self._cache.get_cached_file(config.account_id, config.bucket, object_key)
            if cached is not None:
                file_size = cached.size
        now = time.time()
        task = DownloadTask(
            id=task_id or f"download-{int(now * 1000)}-{uuid.uuid4().hex[:8]}",
            object_key=object_key,
            file_name=file_name or parse_key(object_key)[1],
            file_size=file_size,
            local_path=local_path,
            bucket=config.bucket,
            account_id=config.account_id,
            created_at=int(now),
            updated_at=int(now),
        )
        self._repository.insert([task])
        LOGGER.info("Queued download of %s/%s to %s", config.bucket, object_key, local_path)
        return task

    def start_download_queue(self, config: StorageConfig) -> int:
        """Start pending downloads of ``config``'s bucket up to the ceiling.

        Returns:
            int: Number of downloads started.
        """
        self.register_config(config)
        return self._schedule(config.bucket, config.account_id)

    def start_all_downloads(self, config: StorageConfig) -> list[str]:
        """Requeue every paused download of the bucket and start the queue."""
        self.register_config(config)
        ids = self._repository.set_status_where(
            config.bucket, config.account_id, DownloadStatus.PENDING, {DownloadStatus.PAUSED}
        )
        self._broadcast_batch("resume_all", config.bucket, config.account_id, ids, DownloadStatus.PENDING)
        self._schedule(config.bucket, config.account_id)
        return ids

    def pause_all_downloads(self, bucket: str, account_id: str) -> list[str]:
        """Pause queued and running downloads of the bucket."""
        ids = self._repository.set_status_where(
            bucket,
            account_id,
            DownloadStatus.PAUSED,
            {DownloadStatus.PENDING, DownloadStatus.DOWNLOADING},
        )
        for task_id in ids:
            self._request_stop(task_id, DownloadStatus.PAUSED)
        self._broadcast_batch("pause_all", bucket, account_id, ids, DownloadStatus.PAUSED)
        return ids

    def pause_download(self, task_id: str) -> bool:
        """Pause one download; a running transfer stops at its next chunk."""
        self._repository.get(task_id)
        if not self._status.publish(
            task_id, DownloadStatus.PAUSED, expected={DownloadStatus.PENDING, DownloadStatus.DOWNLOADING}
        ):
            return False
        self._request_stop(task_id, DownloadStatus.PAUSED)
        return True

    def resume_download(self, task_id: str) -> DownloadTask:
        """Requeue a paused, failed or cancelled download.

        Raises:
            DownloadError: If the task is in any other status.
        """
        task = self._repository.get(task_id)
        if not self._status.publish(task_id, DownloadStatus.PENDING, expected=RESUMABLE_STATUSES):
            raise DownloadError(f"Download {task_id} cannot be resumed from {task.status.value}")
        resumed = self._repository.get(task_id)
        self._schedule(task.bucket, task.account_id)
        return resumed

    def cancel_download(self, task_id: str) -> bool:
        """Cancel a download that has not completed and remove its partial file."""
        task = self._repository.get(task_id)
        allowed = {DownloadStatus.PENDING, DownloadStatus.DOWNLOADING, DownloadStatus.PAUSED, DownloadStatus.FAILED}
        if not self._status.publish(task_id, DownloadStatus.CANCELLED, expected=allowed):
            return False
        if not self._request_stop(task_id, DownloadStatus.CANCELLED):
            self._remove_partial(task)
        self._schedule(task.bucket, task.account_id)
        return True

    def delete_download_task(self, task_id: str) -> None:
        """Forget a task; a running download is cancelled first."""
        task = self._repository.get(task_id)
        if task.status == DownloadStatus.DOWNLOADING:
            self._request_stop(task_id, DownloadStatus.CANCELLED)
        self._repository.delete([task_id])
        self._events.emit(DOWNLOAD_TASK_DELETED, DownloadTaskDeletedEvent(task_id=task_id))

    def get_download_tasks(self, bucket: str, account_id: str) -> list[DownloadTask]:
        return self._repository.list_for_scope(bucket, account_id)

    def clear_finished_downloads(self, bucket: str, account_id: str) -> list[str]:
        ids = self._repository.delete_where(bucket, account_id, FINISHED_STATUSES)
        self._broadcast_deleted("clear_finished", bucket, account_id, ids)
        return ids

    def clear_all_downloads(self, bucket: str, account_id: str) -> list[str]:
        """Delete every task of the bucket.

        Raises:
            DownloadQueueBusyError: If any download is running.
        """
        with self._slot_lock:
            if self._repository.count_active(bucket, account_id) > 0:
                raise DownloadQueueBusyError("Cannot clear all downloads while downloads are active")
            ids = self._repository.delete_where(bucket, account_id, set(DownloadStatus))
        self._broadcast_deleted("clear_all", bucket, account_id, ids)
        return ids

    def pause_stale_downloads_on_startup(self) -> list[str]:
        """Park downloads left running by a previous process as ``paused``."""
        ids = self._repository.pause_in_progress()
        if ids:
            LOGGER.info("Paused %d downloads interrupted by the previous session", len(ids))
        return ids

    def wait_idle(self, bucket: str, account_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the bucket has no pending or running downloads.

        Returns:
            bool: ``False`` when ``timeout`` elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        busy = {DownloadStatus.PENDING, DownloadStatus.DOWNLOADING}
        with self._settled:
            while True:
                tasks = self._repository.list_for_scope(bucket, account_id)
                with self._registry_lock:
                    running = any(task.id in self._controls for task in tasks)
                if not running and not any(task.status in busy for task in tasks):
                    return True
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._settled.wait(0.1 if remaining is None else min(0.1, remaining))

    def shutdown(self, wait: bool = True) -> None:
        """Stop running downloads (left ``paused``) and the worker pool."""
        self._closed = True
        with self._registry_lock:
            controls = list(self._controls.items())
        for task_id, control in controls:
            if self._status.publish(task_id, DownloadStatus.PAUSED, expected={DownloadStatus.DOWNLOADING}):
                control.request(DownloadStatus.PAUSED.value)
        self._pool.shutdown(wait=wait)

    # ------------------------------------------------------------------ #
    # Scheduling                                                         #
    # ------------------------------------------------------------------ #

    def _schedule(self, bucket: str, account_id: str) -> int:
        if self._closed:
            return 0
        started = 0
        with self._slot_lock:
            slots = self._settings.max_concurrent_downloads - self._repository.count_active(bucket, account_id)
            if slots <= 0:
                return 0
            adapter = self._adapter_for(bucket, account_id)
            if adapter is None:
                LOGGER.warning("No storage configuration registered for %s/%s", account_id, bucket)
                return 0
            with self._registry_lock:
                unwinding_count = len(self._controls)
            # Over-fetch so tasks still unwinding a previous run do not starve the scan.
            for task in self._repository.list_pending(bucket, account_id, slots + unwinding_count):
                if started >= slots:
                    break
                with self._registry_lock:
                    unwinding = task.id in self._controls
                if unwinding:
                    continue
                if not self._status.publish(task.id, DownloadStatus.DOWNLOADING, expected={DownloadStatus.PENDING}):
                    continue
                control = DownloadControl()
                with self._registry_lock:
                    self._controls[task.id] = control
                started += 1
                running = task.model_copy(update={"status": DownloadStatus.DOWNLOADING})
                self._pool.submit(self._execute, running, adapter, control)
        return started

    def _execute(self, task: DownloadTask, adapter: StorageAdapter, control: DownloadControl) -> None:
        try:
            self._worker.run(task, adapter, control)
        except DownloadInterrupted as exc:
            LOGGER.info("Download %s stopped: %s", task.id, exc.status)
        except (ProviderError, CacheError, OSError) as exc:
            LOGGER.warning("Download %s failed: %s", task.id, exc)
            self._status.publish(
                task.id, DownloadStatus.FAILED, expected={DownloadStatus.DOWNLOADING}, error=str(exc)
            )
        except Exception as exc:  # noqa: BLE001 - one task must not take down the queue
            LOGGER.exception("Download %s failed unexpectedly", task.id)
            self._status.publish(
                task.id, DownloadStatus.FAILED, expected={DownloadStatus.DOWNLOADING}, error=str(exc)
            )
        finally:
            with self._registry_lock:
                if self._controls.get(task.id) is control:
                    del self._controls[task.id]
            with self._settled:
                self._settled.notify_all()
            try:
                self._schedule(task.bucket, task.account_id)
            except CacheError as exc:
                LOGGER.error("Download scheduling pass failed: %s", exc)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _request_stop(self, task_id: str, status: DownloadStatus) -> bool:
        with self._registry_lock:
            control = self._controls.get(task_id)
        if control is None:
            return False
        control.request(status.value)
        return True

    def _remove_partial(self, task: DownloadTask) -> None:
        try:
            task.destination.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Removing partial download %s failed: %s", task.destination, exc)

    def _broadcast_batch(
        self, operation: str, bucket: str, account_id: str, ids: Sequence[str], status: DownloadStatus
    ) -> None:
        for task_id in ids:
            self._events.emit(
                DOWNLOAD_STATUS_CHANGED, DownloadStatusChangedEvent(task_id=task_id, status=status.value)
            )
        self._events.emit(
            DOWNLOAD_BATCH_OPERATION,
            DownloadBatchOperationEvent(operation=operation, bucket=bucket, account_id=account_id),
        )

    def _broadcast_deleted(self, operation: str, bucket: str, account_id: str, ids: Sequence[str]) -> None:
        for task_id in ids:
            self._events.emit(DOWNLOAD_TASK_DELETED, DownloadTaskDeletedEvent(task_id=task_id))
        self._events.emit(
            DOWNLOAD_BATCH_OPERATION,
            DownloadBatchOperationEvent(operation=operation, bucket=bucket, account_id=account_id),
        )


__all__ = ["DownloadQueue"]
