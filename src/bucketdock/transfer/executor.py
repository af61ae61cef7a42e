"""Execution of a single move task: copy or stream, settle, clean up."""

from __future__ import annotations

import logging
import math
import tempfile
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import closing
from datetime import datetime, timezone
from typing import Iterable, Optional

from bucketdock.cache import CacheError, CacheStore
from bucketdock.events import (
    MOVE_PROGRESS,
    MOVE_STATUS_CHANGED,
    EventBus,
    MoveProgressEvent,
    MoveStatusChangedEvent,
)
from bucketdock.providers import ObjectNotFoundError, ProviderError, StorageAdapter, StorageObject
from bucketdock.providers.models import UploadedPart

from .cache_updates import CacheUpdateQueue
from .errors import MoveInterrupted
from .models import IN_PROGRESS_STATUSES, MoveStatus, MoveTask
from .repository import MoveSessionRepository
from .speed import RateWindow

LOGGER = logging.getLogger(__name__)

MB = 1024 * 1024
STREAM_CHUNK_SIZE = 1 * MB
SPOOL_MAX_MEMORY = 16 * MB


class TransferControl:
    """Cooperative stop signal shared between the queue and a running task."""

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
        """Raise ``MoveInterrupted`` once a pause or cancel was requested."""
        if self._event.is_set():
            raise MoveInterrupted(self.reason or MoveStatus.CANCELLED.value)


class StatusPublisher:
    """Persist status transitions and broadcast ``move-status-changed``."""

    def __init__(self, repository: MoveSessionRepository, events: EventBus) -> None:
        self._repository = repository
        self._events = events

    def publish(
        self,
        task_id: str,
        status: MoveStatus,
        *,
        expected: Optional[Iterable[MoveStatus]] = None,
        error: Optional[str] = None,
        **fields,
    ) -> bool:
        changed = self._repository.transition(
            task_id, status, expected=expected, error=error, **fields
        )
        if changed:
            self._events.emit(
                MOVE_STATUS_CHANGED,
                MoveStatusChangedEvent(task_id=task_id, status=status.value, error=error),
            )
        return changed


class _ProgressReporter:
    """Emit ``move-progress`` and persist checkpoints every ``step`` percent."""

    def __init__(
        self,
        task: MoveTask,
        repository: MoveSessionRepository,
        events: EventBus,
        *,
        total_bytes: int,
        step: int,
    ) -> None:
        self._task_id = task.id
        self._repository = repository
        self._events = events
        self._total = total_bytes
        self._step = step
        self._rate = RateWindow(2.0)
        self._persisted = -1
        self._lock = threading.Lock()

    def report(self, transferred: int, *, phase: MoveStatus, cap: int = 100) -> None:
        percent = min(cap, transferred * 100 // self._total) if self._total > 0 else 0
        speed = self._rate.add(transferred)
        self._events.emit(
            MOVE_PROGRESS,
            MoveProgressEvent(
                task_id=self._task_id,
                phase=phase.value,
                percent=percent,
                transferred_bytes=transferred,
                total_bytes=self._total,
                speed=speed,
            ),
        )
        with self._lock:
            due = percent >= self._persisted + self._step or (percent == 99 and self._persisted < 99)
            if due and percent > self._persisted:
                self._persisted = percent
                self._repository.update_progress(self._task_id, percent, transferred)


class MoveExecutor:
    """Carry one move task from ``downloading`` to ``success``.

    Same-provider moves try a server-side copy first. Otherwise the object is
    streamed: a single PUT below ``multipart_threshold`` (buffered through a
    spooled temporary file), or a multipart upload fed by ranged reads whose
    completed parts are checkpointed so a retried task resumes.
    """

    def __init__(
        self,
        repository: MoveSessionRepository,
        events: EventBus,
        *,
        cache: Optional[CacheStore] = None,
        cache_updates: Optional[CacheUpdateQueue] = None,
        multipart_threshold: int = 100 * MB,
        part_size: int = 20 * MB,
        max_concurrent_parts: int = 4,
        persist_step: int = 5,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self._repository = repository
        self._events = events
        self._status = StatusPublisher(repository, events)
        self._cache = cache
        self._cache_updates = cache_updates
        self._multipart_threshold = multipart_threshold
        self._part_size = part_size
        self._max_concurrent_parts = max_concurrent_parts
        self._persist_step = persist_step
        self._chunk_size = chunk_size

    def run(
        self,
        task: MoveTask,
        source: StorageAdapter,
        dest: StorageAdapter,
        control: TransferControl,
    ) -> Optional[str]:
        """Transfer ``task`` and settle it.

        Args:
            task: Task already transitioned to ``downloading``.
            source: Adapter for the source location.
            dest: Adapter for the destination location.
            control: Pause/cancel signal checked between chunks and parts.

        Returns:
            Optional[str]: Source cleanup error when deleting the original failed.

        Raises:
            MoveInterrupted: If the task was paused or cancelled mid-flight.
            ProviderError: If reading or writing the object failed.
        """
        size = task.file_size
        if size <= 0:
            head = source.head_object(task.source_key)
            if head is None:
                raise ObjectNotFoundError(f"Source object not found: {task.source_key}")
            size = head.size
            self._repository.update_fields(task.id, file_size=size)

        reporter = _ProgressReporter(
            task, self._repository, self._events, total_bytes=size, step=self._persist_step
        )
        control.check()

        if not self._try_server_copy(task, source, dest, reporter, size):
            if size >= self._multipart_threshold:
                self._stream_multipart(task, source, dest, control, reporter, size)
            else:
                self._stream_single(task, source, dest, control, reporter, size)

        control.check()
        return self._settle(task, source, size)

    # ------------------------------------------------------------------ #
    # Transfer strategies                                                #
    # ------------------------------------------------------------------ #

    def _advance(self, task: MoveTask, status: MoveStatus, **fields) -> None:
        if not self._status.publish(task.id, status, expected=IN_PROGRESS_STATUSES, **fields):
            # Paused or cancelled underneath us.
            current = self._repository.get(task.id).status
            raise MoveInterrupted(current.value)

    def _try_server_copy(
        self,
        task: MoveTask,
        source: StorageAdapter,
        dest: StorageAdapter,
        reporter: _ProgressReporter,
        size: int,
    ) -> bool:
        if source.provider != dest.provider:
            return False
        try:
            dest.copy_object(source.config, task.source_key, task.dest_key)
        except ProviderError as exc:
            LOGGER.info("Server-side copy of %s failed, streaming instead: %s", task.source_key, exc)
            return False
        self._advance(task, MoveStatus.UPLOADING)
        reporter.report(size, phase=MoveStatus.UPLOADING, cap=99)
        return True

    def _stream_single(
        self,
        task: MoveTask,
        source: StorageAdapter,
        dest: StorageAdapter,
        control: TransferControl,
        reporter: _ProgressReporter,
        size: int,
    ) -> None:
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as buffer:
            received = 0
            with closing(source.open_object(task.source_key)) as body:
                while True:
                    control.check()
                    chunk = body.read(self._chunk_size)
                    if not chunk:
                        break
                    buffer.write(chunk)
                    received += len(chunk)
                    reporter.report(received, phase=MoveStatus.DOWNLOADING, cap=99)

            control.check()
            self._advance(task, MoveStatus.UPLOADING)
            buffer.seek(0)
            dest.put_object(task.dest_key, buffer)
            reporter.report(received, phase=MoveStatus.UPLOADING, cap=99)

    def _stream_multipart(
        self,
        task: MoveTask,
        source: StorageAdapter,
        dest: StorageAdapter,
        control: TransferControl,
        reporter: _ProgressReporter,
        size: int,
    ) -> None:
        self._advance(task, MoveStatus.UPLOADING)
        upload_id = self._repository.get(task.id).upload_id
        completed: dict[int, UploadedPart] = {}
        if upload_id:
            try:
                remote = dest.list_parts(task.dest_key, upload_id)
            except ObjectNotFoundError:
                LOGGER.info("Multipart upload for %s expired; starting over", task.id)
                self._repository.clear_parts(task.id)
                upload_id = None
            else:
                local = {part.part_number for part in self._repository.get_parts(task.id)}
                completed = {part.part_number: part for part in remote if part.part_number in local}
        if not upload_id:
            upload_id = dest.create_multipart_upload(task.dest_key)
            self._repository.update_fields(task.id, upload_id=upload_id)

        total_parts = max(1, math.ceil(size / self._part_size))

        def _part_length(number: int) -> int:
            start = (number - 1) * self._part_size
            return min(self._part_size, size - start)

        done_bytes = sum(_part_length(number) for number in completed)
        if done_bytes:
            reporter.report(done_bytes, phase=MoveStatus.UPLOADING, cap=99)

        failed = threading.Event()

        def _copy_part(number: int) -> UploadedPart:
            if failed.is_set():
                raise MoveInterrupted(MoveStatus.ERROR.value)
            control.check()
            start = (number - 1) * self._part_size
            end = start + _part_length(number) - 1
            with closing(source.open_object(task.source_key, (start, end))) as body:
                data = body.read()
            control.check()
            etag = dest.upload_part(task.dest_key, upload_id, number, data)
            return UploadedPart(part_number=number, etag=etag)

        remaining = [number for number in range(1, total_parts + 1) if number not in completed]
        with ThreadPoolExecutor(
            max_workers=self._max_concurrent_parts, thread_name_prefix=f"{task.id}-part"
        ) as pool:
            futures = {pool.submit(_copy_part, number): number for number in remaining}
            pending = set(futures)
            try:
                while pending:
                    finished, pending = wait(pending, return_when=FIRST_EXCEPTION)
                    errors: list[BaseException] = []
                    # Checkpoint every part that landed before surfacing a failure.
                    for future in sorted(finished, key=futures.__getitem__):
                        error = future.exception()
                        if error is not None:
                            errors.append(error)
                            continue
                        part = future.result()
                        completed[part.part_number] = part
                        self._repository.save_part(task.id, part)
                        done_bytes += _part_length(part.part_number)
                        reporter.report(done_bytes, phase=MoveStatus.UPLOADING, cap=99)
                    if errors:
                        raise errors[0]
            except BaseException:
                failed.set()
                for future in pending:
                    future.cancel()
                raise

        control.check()
        dest.complete_multipart_upload(task.dest_key, upload_id, list(completed.values()))
        self._repository.clear_parts(task.id)

    # ------------------------------------------------------------------ #
    # Settling                                                           #
    # ------------------------------------------------------------------ #

    def _settle(self, task: MoveTask, source: StorageAdapter, size: int) -> Optional[str]:
        self._advance(task, MoveStatus.FINISHING, progress=100, transferred_bytes=size)
        self._events.emit(
            MOVE_PROGRESS,
            MoveProgressEvent(
                task_id=task.id,
                phase=MoveStatus.FINISHING.value,
                percent=100,
                transferred_bytes=size,
                total_bytes=size,
                speed=0.0,
            ),
        )

        cleanup_error: Optional[str] = None
        if task.delete_original:
            self._status.publish(task.id, MoveStatus.DELETING, expected={MoveStatus.FINISHING})
            try:
                source.delete_object(task.source_key)
            except ProviderError as exc:
                cleanup_error = str(exc)
                LOGGER.warning("Deleting moved source %s failed: %s", task.source_key, exc)

        self._status.publish(
            task.id,
            MoveStatus.SUCCESS,
            expected={MoveStatus.FINISHING, MoveStatus.DELETING},
            cleanup_error=cleanup_error,
            cleanup_attempts=1 if task.delete_original else 0,
        )

        stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        if self._cache is not None:
            try:
                self._cache.apply_upsert(
                    task.dest_account_id,
                    task.dest_bucket,
                    [StorageObject(key=task.dest_key, size=size, last_modified=stamp)],
                )
            except CacheError as exc:
                LOGGER.error("Cache update after move %s failed: %s", task.id, exc)
        if task.delete_original and cleanup_error is None and self._cache_updates is not None:
            self._cache_updates.queue_delete(task.source_account_id, task.source_bucket, task.source_key)
        return cleanup_error


__all__ = ["MoveExecutor", "TransferControl", "StatusPublisher", "MB"]
