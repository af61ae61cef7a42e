"""Persistent move queue with a global concurrency ceiling."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional, Sequence, Union

from bucketdock.cache import CacheError, CacheStore
from bucketdock.config.models import TransferSettings
from bucketdock.events import (
    MOVE_BATCH_OPERATION,
    MOVE_STATUS_CHANGED,
    MOVE_TASK_DELETED,
    EventBus,
    MoveBatchOperationEvent,
    MoveStatusChangedEvent,
    MoveTaskDeletedEvent,
)
from bucketdock.providers import (
    AdapterFactory,
    MoveOperation,
    ProviderError,
    StorageAdapter,
    StorageConfig,
    get_adapter,
)

from .cache_updates import CacheUpdateQueue
from .errors import MoveInterrupted, MoveQueueBusyError, TransferError
from .executor import MB, MoveExecutor, StatusPublisher, TransferControl
from .models import (
    ACTIVE_STATUSES,
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    MoveStatus,
    MoveTask,
)
from .repository import MoveSessionRepository

LOGGER = logging.getLogger(__name__)

OperationLike = Union[MoveOperation, tuple[str, str]]


class _QueueWorker:
    """Scheduler thread for one source queue; wake-up signals coalesce."""

    def __init__(self, name: str, schedule) -> None:
        self._schedule = schedule
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"move-queue-{name}", daemon=True)
        self._thread.start()

    def signal(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stopped.set()
        self._wake.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _loop(self) -> None:
        while True:
            self._wake.wait()
            if self._stopped.is_set():
                return
            self._wake.clear()
            try:
                self._schedule()
            except (CacheError, TransferError) as exc:
                LOGGER.error("Move scheduling pass failed: %s", exc)
            except Exception:  # noqa: BLE001 - the scheduler thread must outlive a bad pass
                LOGGER.exception("Move scheduling pass failed unexpectedly")


class TransferQueue:
    """Schedule and control persisted move tasks.

    Tasks are grouped by source ``(account, bucket)``; each group gets its own
    scheduler thread, while a single slot lock enforces the global ceiling of
    ``max_concurrent_moves`` tasks in ``downloading``/``uploading`` below 100%.
    Acquiring a slot and flipping ``pending -> downloading`` happen together
    under that lock.
    """

    def __init__(
        self,
        repository: MoveSessionRepository,
        events: EventBus,
        *,
        settings: Optional[TransferSettings] = None,
        cache: Optional[CacheStore] = None,
        cache_updates: Optional[CacheUpdateQueue] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self._repository = repository
        self._events = events
        self._settings = settings or TransferSettings()
        self._cache = cache
        self._cache_updates = cache_updates
        self._adapter_factory = adapter_factory
        self._status = StatusPublisher(repository, events)
        self._executor = MoveExecutor(
            repository,
            events,
            cache=cache,
            cache_updates=cache_updates,
            multipart_threshold=self._settings.multipart_threshold_mb * MB,
            part_size=self._settings.part_size_mb * MB,
            max_concurrent_parts=self._settings.max_concurrent_parts,
            persist_step=self._settings.progress_persist_step,
        )

        self._configs: dict[str, StorageConfig] = {}
        self._adapters: dict[str, StorageAdapter] = {}
        self._controls: dict[str, TransferControl] = {}
        self._workers: dict[str, _QueueWorker] = {}
        self._registry_lock = threading.Lock()
        self._slot_lock = threading.Lock()
        self._settled = threading.Condition()
        self._cleanup_timer: Optional[threading.Timer] = None
        # Tasks in finishing/deleting no longer hold a slot but still occupy a thread.
        self._pool = ThreadPoolExecutor(
            max_workers=self._settings.max_concurrent_moves * 2, thread_name_prefix="move"
        )
        self._closed = False

    # ------------------------------------------------------------------ #
    # Registry                                                           #
    # ------------------------------------------------------------------ #

    def register_config(self, config: StorageConfig) -> None:
        """Make ``config`` resolvable for tasks that reference its location."""
        with self._registry_lock:
            self._configs[config.registry_key] = config
            self._adapters.pop(config.registry_key, None)

    def _config_for(self, registry_key: str) -> Optional[StorageConfig]:
        with self._registry_lock:
            return self._configs.get(registry_key)

    def _adapter_for(self, config: StorageConfig) -> StorageAdapter:
        with self._registry_lock:
            adapter = self._adapters.get(config.registry_key)
            if adapter is None:
                adapter = self._adapter_factory(config)
                self._adapters[config.registry_key] = adapter
            return adapter

    # ------------------------------------------------------------------ #
    # Commands                                                           #
    # ------------------------------------------------------------------ #

    def enqueue_moves(
        self,
        source: StorageConfig,
        dest: StorageConfig,
        operations: Iterable[OperationLike],
        *,
        delete_original: bool = False,
    ) -> list[MoveTask]:
        """Persist one ``pending`` task per operation.

        Args:
            source: Location the objects are read from.
            dest: Location the objects are written to.
            operations: ``(source_key, dest_key)`` pairs or ``MoveOperation`` values.
            delete_original: Delete each source object after its copy lands.

        Returns:
            list[MoveTask]: The created tasks, in operation order.
        """
        self.register_config(source)
        self.register_config(dest)
        stamp_ms = int(time.time() * 1000)
        now = stamp_ms // 1000
        tasks: list[MoveTask] = []
        for index, operation in enumerate(operations):
            if isinstance(operation, MoveOperation):
                old_key, new_key = operation.old_key, operation.new_key
            else:
                old_key, new_key = operation
            cached = (
                self._cache.get_cached_file(source.account_id, source.bucket, old_key)
                if self._cache is not None
                else None
            )
            tasks.append(
                MoveTask(
                    id=f"move-{stamp_ms}-{index}",
                    source_key=old_key,
                    dest_key=new_key,
                    source_bucket=source.bucket,
                    source_account_id=source.account_id,
                    source_provider=source.provider,
                    dest_bucket=dest.bucket,
                    dest_account_id=dest.account_id,
                    dest_provider=dest.provider,
                    delete_original=delete_original,
                    file_size=cached.size if cached is not None else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
        if tasks:
            self._repository.insert(tasks)
            LOGGER.info(
                "Queued %d moves from %s/%s to %s/%s",
                len(tasks),
                source.account_id,
                source.bucket,
                dest.account_id,
                dest.bucket,
            )
        return tasks

    def start_move_queue(self, source: StorageConfig, dest: StorageConfig) -> None:
        """Begin processing pending tasks of ``source``'s queue up to the ceiling."""
        self.register_config(source)
        self.register_config(dest)
        self._signal(source.bucket, source.account_id)

    def pause_all_moves(self, source_bucket: str, source_account_id: str) -> list[str]:
        """Pause queued ``pending`` tasks; transfers already running finish their pass."""
        ids = self._repository.set_status_where(
            source_bucket, source_account_id, MoveStatus.PAUSED, {MoveStatus.PENDING}
        )
        self._broadcast_batch("pause_all", source_bucket, source_account_id, ids, MoveStatus.PAUSED)
        return ids

    def resume_all_moves(self, source_bucket: str, source_account_id: str) -> list[str]:
        ids = self._repository.set_status_where(
            source_bucket, source_account_id, MoveStatus.PENDING, {MoveStatus.PAUSED}
        )
        self._broadcast_batch("resume_all", source_bucket, source_account_id, ids, MoveStatus.PENDING)
        self._signal(source_bucket, source_account_id)
        return ids

    def resume_move(self, task_id: str) -> MoveTask:
        """Requeue a paused or failed task; failed tasks keep their multipart parts."""
        task = self._repository.get(task_id)
        if not self._status.publish(
            task_id, MoveStatus.PENDING, expected={MoveStatus.PAUSED, MoveStatus.ERROR}
        ):
            raise TransferError(f"Move {task_id} cannot be resumed from {task.status.value}")
        resumed = self._repository.get(task_id)
        self._signal(task.source_bucket, task.source_account_id)
        return resumed

    def pause_move(self, task_id: str) -> bool:
        """Pause one task; an active transfer stops at its next chunk or part boundary."""
        task = self._repository.get(task_id)
        allowed = {MoveStatus.PENDING, *ACTIVE_STATUSES}
        if not self._status.publish(task_id, MoveStatus.PAUSED, expected=allowed):
            return False
        self._request_stop(task_id, MoveStatus.PAUSED)
        self._signal(task.source_bucket, task.source_account_id)
        return True

    def cancel_move(self, task_id: str) -> bool:
        """Cancel a task that has not finished; its multipart upload is aborted."""
        task = self._repository.get(task_id)
        allowed = {MoveStatus.PENDING, MoveStatus.PAUSED, MoveStatus.ERROR, *ACTIVE_STATUSES}
        if not self._status.publish(task_id, MoveStatus.CANCELLED, expected=allowed):
            return False
        if not self._request_stop(task_id, MoveStatus.CANCELLED):
            self._discard_upload(task)
        self._signal(task.source_bucket, task.source_account_id)
        return True

    def delete_move(self, task_id: str) -> None:
        task = self._repository.get(task_id)
        if task.status in IN_PROGRESS_STATUSES:
            raise MoveQueueBusyError(f"Move {task_id} is still in progress")
        self._discard_upload(task)
        self._repository.delete([task_id])
        self._events.emit(MOVE_TASK_DELETED, MoveTaskDeletedEvent(task_id=task_id))

    def clear_finished_moves(self, source_bucket: str, source_account_id: str) -> list[str]:
        ids = self._repository.delete_where(source_bucket, source_account_id, TERMINAL_STATUSES)
        self._broadcast_deleted("clear_finished", source_bucket, source_account_id, ids)
        return ids

    def clear_all_moves(self, source_bucket: str, source_account_id: str) -> list[str]:
        """Delete every task of the queue.

        Raises:
            MoveQueueBusyError: If any task is downloading, uploading, finishing or deleting.
        """
        with self._slot_lock:
            if self._repository.count_in_progress(source_bucket, source_account_id) > 0:
                raise MoveQueueBusyError("Cannot clear all moves while moves are active")
            tasks = self._repository.list_for_source(source_bucket, source_account_id)
            for task in tasks:
                self._discard_upload(task)
            ids = [task.id for task in tasks]
            self._repository.delete(ids)
        self._broadcast_deleted("clear_all", source_bucket, source_account_id, ids)
        return ids

    def get_move_tasks(self, source_bucket: str, source_account_id: str) -> list[MoveTask]:
        return self._repository.list_for_source(source_bucket, source_account_id)

    def get_all_active_move_tasks(self) -> list[MoveTask]:
        """Return every non-terminal task across all queues."""
        return self._repository.list_unfinished()

    def pause_stale_moves_on_startup(self) -> list[str]:
        """Park tasks left in progress by a previous process as ``paused``."""
        ids = self._repository.pause_in_progress()
        if ids:
            LOGGER.info("Paused %d moves interrupted by the previous session", len(ids))
        return ids

    def wait_idle(
        self, source_bucket: str, source_account_id: str, timeout: Optional[float] = None
    ) -> bool:
        """Block until the queue has no pending or in-progress tasks.

        Returns:
            bool: ``False`` when ``timeout`` elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        busy = {MoveStatus.PENDING, *IN_PROGRESS_STATUSES}
        with self._settled:
            while True:
                tasks = self._repository.list_for_source(source_bucket, source_account_id)
                if not any(task.status in busy for task in tasks):
                    return True
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._settled.wait(0.1 if remaining is None else min(0.1, remaining))

    def retry_source_cleanups(self) -> int:
        """Retry deleting sources whose removal failed after a successful move.

        Returns:
            int: Number of sources deleted on this pass.
        """
        cleaned = 0
        limit = self._settings.cleanup_retry_attempts
        for task in self._repository.list_cleanup_pending(limit):
            config = self._config_for(task.source_registry_key)
            if config is None:
                continue
            attempts = task.cleanup_attempts + 1
            try:
                self._adapter_for(config).delete_object(task.source_key)
            except ProviderError as exc:
                LOGGER.warning("Source cleanup for %s failed (attempt %d): %s", task.id, attempts, exc)
                self._repository.update_fields(task.id, cleanup_error=str(exc), cleanup_attempts=attempts)
                continue
            self._repository.update_fields(task.id, cleanup_error=None, cleanup_attempts=attempts)
            if self._cache_updates is not None:
                self._cache_updates.queue_delete(task.source_account_id, task.source_bucket, task.source_key)
            cleaned += 1
        if self._repository.list_cleanup_pending(limit):
            self._schedule_cleanup_retry()
        return cleaned

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduler threads and running transfers (left ``paused``)."""
        self._closed = True
        with self._registry_lock:
            workers = list(self._workers.values())
            self._workers.clear()
            controls = list(self._controls.items())
            if self._cleanup_timer is not None:
                self._cleanup_timer.cancel()
                self._cleanup_timer = None
        for worker in workers:
            worker.stop()
        for task_id, control in controls:
            if self._status.publish(task_id, MoveStatus.PAUSED, expected=ACTIVE_STATUSES):
                control.request(MoveStatus.PAUSED.value)
        self._pool.shutdown(wait=wait)
        if self._cache_updates is not None:
            self._cache_updates.flush()

    # ------------------------------------------------------------------ #
    # Scheduling                                                         #
    # ------------------------------------------------------------------ #

    def _signal(self, source_bucket: str, source_account_id: str) -> None:
        if self._closed:
            return
        queue_key = f"{source_account_id}:{source_bucket}"
        with self._registry_lock:
            worker = self._workers.get(queue_key)
            if worker is None:
                worker = _QueueWorker(
                    queue_key, lambda: self._schedule(source_bucket, source_account_id)
                )
                self._workers[queue_key] = worker
        worker.signal()

    def _schedule(self, source_bucket: str, source_account_id: str) -> None:
        with self._slot_lock:
            slots = self._settings.max_concurrent_moves - self._repository.count_active()
            if slots <= 0:
                return
            candidates = self._repository.list_pending(
                source_bucket, source_account_id, slots * self._settings.scan_multiplier
            )
            for task in candidates:
                if slots <= 0:
                    break
                source = self._config_for(task.source_registry_key)
                if source is None:
                    continue
                with self._registry_lock:
                    unwinding = task.id in self._controls
                if unwinding:
                    # The previous run re-signals this queue when it exits.
                    continue
                dest = self._config_for(task.dest_registry_key)
                if dest is None:
                    self._status.publish(
                        task.id,
                        MoveStatus.ERROR,
                        expected={MoveStatus.PENDING},
                        error=f"Destination {task.dest_registry_key} is not available",
                    )
                    continue
                if not self._status.publish(
                    task.id,
                    MoveStatus.DOWNLOADING,
                    expected={MoveStatus.PENDING},
                    progress=0,
                    transferred_bytes=0,
                ):
                    continue
                slots -= 1
                control = TransferControl()
                with self._registry_lock:
                    self._controls[task.id] = control
                running = task.model_copy(
                    update={"status": MoveStatus.DOWNLOADING, "progress": 0, "transferred_bytes": 0}
                )
                self._pool.submit(self._execute, running, source, dest, control)

    def _execute(
        self, task: MoveTask, source: StorageConfig, dest: StorageConfig, control: TransferControl
    ) -> None:
        try:
            cleanup_error = self._executor.run(
                task, self._adapter_for(source), self._adapter_for(dest), control
            )
            if cleanup_error is not None:
                self._schedule_cleanup_retry()
        except MoveInterrupted as exc:
            LOGGER.info("Move %s stopped: %s", task.id, exc.status)
            if exc.status == MoveStatus.CANCELLED.value:
                self._discard_upload(self._repository.get(task.id))
        except (ProviderError, CacheError, OSError) as exc:
            LOGGER.warning("Move %s failed: %s", task.id, exc)
            self._status.publish(task.id, MoveStatus.ERROR, expected=IN_PROGRESS_STATUSES, error=str(exc))
        except Exception as exc:  # noqa: BLE001 - one task must not take down the queue
            LOGGER.exception("Move %s failed unexpectedly", task.id)
            self._status.publish(task.id, MoveStatus.ERROR, expected=IN_PROGRESS_STATUSES, error=str(exc))
        finally:
            with self._registry_lock:
                if self._controls.get(task.id) is control:
                    del self._controls[task.id]
            with self._settled:
                self._settled.notify_all()
            self._signal(task.source_bucket, task.source_account_id)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _request_stop(self, task_id: str, status: MoveStatus) -> bool:
        with self._registry_lock:
            control = self._controls.get(task_id)
        if control is None:
            return False
        control.request(status.value)
        return True

    def _discard_upload(self, task: MoveTask) -> None:
        """Abort a task's remote multipart upload (if any) and drop its parts."""
        if not task.upload_id:
            return
        dest = self._config_for(task.dest_registry_key)
        if dest is not None:
            try:
                self._adapter_for(dest).abort_multipart_upload(task.dest_key, task.upload_id)
            except ProviderError as exc:
                LOGGER.warning("Aborting multipart upload for %s failed: %s", task.id, exc)
        self._repository.clear_parts(task.id)

    def _schedule_cleanup_retry(self) -> None:
        if self._closed or self._settings.cleanup_retry_attempts <= 1:
            return
        with self._registry_lock:
            pending = self._cleanup_timer
            if pending is not None and pending.is_alive() and pending is not threading.current_thread():
                return
            timer = threading.Timer(self._settings.cleanup_retry_delay_seconds, self.retry_source_cleanups)
            timer.daemon = True
            self._cleanup_timer = timer
        timer.start()

    def _broadcast_batch(
        self,
        operation: str,
        source_bucket: str,
        source_account_id: str,
        ids: Sequence[str],
        status: MoveStatus,
    ) -> None:
        for task_id in ids:
            self._events.emit(
                MOVE_STATUS_CHANGED, MoveStatusChangedEvent(task_id=task_id, status=status.value)
            )
        self._events.emit(
            MOVE_BATCH_OPERATION,
            MoveBatchOperationEvent(
                operation=operation, source_bucket=source_bucket, source_account_id=source_account_id
            ),
        )

    def _broadcast_deleted(
        self, operation: str, source_bucket: str, source_account_id: str, ids: Sequence[str]
    ) -> None:
        for task_id in ids:
            self._events.emit(MOVE_TASK_DELETED, MoveTaskDeletedEvent(task_id=task_id))
        self._events.emit(
            MOVE_BATCH_OPERATION,
            MoveBatchOperationEvent(
                operation=operation, source_bucket=source_bucket, source_account_id=source_account_id
            ),
        )


__all__ = ["TransferQueue", "OperationLike"]
