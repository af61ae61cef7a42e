"""Single-request and resumable multipart uploads of local files."""

from __future__ import annotations

import logging
import math
import mimetypes
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Optional

from bucketdock.config.models import UploadSettings
from bucketdock.providers import (
    AdapterFactory,
    ObjectNotFoundError,
    ProviderError,
    StorageAdapter,
    StorageConfig,
    get_adapter,
)
from bucketdock.providers.models import UploadedPart
from bucketdock.transfer.speed import RateWindow

from .errors import UploadCancelledError, UploadError
from .models import SessionStatus, UploadFingerprint, UploadProgress, UploadResult, UploadSession
from .sessions import UploadSessionStore

LOGGER = logging.getLogger(__name__)

MB = 1024 * 1024
ProgressCallback = Callable[[UploadProgress], None]


def _acquire(slots: threading.BoundedSemaphore, *stops: threading.Event) -> bool:
    """Take a look-ahead slot unless one of ``stops`` fires while waiting."""
    while not slots.acquire(timeout=0.1):
        if any(stop.is_set() for stop in stops):
            return False
    if any(stop.is_set() for stop in stops):
        slots.release()
        return False
    return True


class _PartCheckpointer:
    """Buffer completed parts and persist them at most once per interval."""

    def __init__(self, sessions: UploadSessionStore, session_id: str, interval: float) -> None:
        self._sessions = sessions
        self._session_id = session_id
        self._interval = interval
        self._pending: list[UploadedPart] = []
        self._last_flush = time.monotonic()
        self._lock = threading.Lock()

    def add(self, part: UploadedPart) -> None:
        with self._lock:
            self._pending.append(part)
            if time.monotonic() - self._last_flush < self._interval:
                return
            batch, self._pending = self._pending, []
            self._last_flush = time.monotonic()
        self._sessions.save_completed_parts(self._session_id, batch)

    def flush(self) -> None:
        with self._lock:
            batch, self._pending = self._pending, []
            self._last_flush = time.monotonic()
        self._sessions.save_completed_parts(self._session_id, batch)


class _ProgressMeter:
    def __init__(self, total: int, callback: Optional[ProgressCallback], initial: int = 0) -> None:
        self._total = total
        self._callback = callback
        self._done = initial
        self._rate = RateWindow(2.0)
        self._lock = threading.Lock()
        self._rate.add(initial)

    def advance(self, amount: int) -> None:
        with self._lock:
            self._done += amount
            done = self._done
            speed = self._rate.add(done)
        self._emit(done, speed)

    def finish(self) -> None:
        with self._lock:
            self._done = self._total
        self._emit(self._total, 0.0)

    def _emit(self, done: int, speed: float) -> None:
        if self._callback is None:
            return
        percent = 100 if self._total == 0 else min(100, done * 100 // self._total)
        self._callback(
            UploadProgress(uploaded_bytes=done, total_bytes=self._total, percent=percent, speed=speed)
        )


class UploadEngine:
    """Upload local files, resuming interrupted multipart uploads.

    Files below ``multipart_threshold_mb`` go up in one request. Larger files
    are split into ``part_size_mb`` parts uploaded by a pool of
    ``max_concurrent_parts`` workers; the reader stays at most
    ``prefetch_parts`` parts ahead of the pool. Completed parts are
    checkpointed so a later upload of the same unchanged file skips them.

    ``multipart_threshold`` and ``part_size`` override the settings in bytes.
    """

    def __init__(
        self,
        sessions: UploadSessionStore,
        *,
        settings: Optional[UploadSettings] = None,
        adapter_factory: AdapterFactory = get_adapter,
        multipart_threshold: Optional[int] = None,
        part_size: Optional[int] = None,
    ) -> None:
        self._sessions = sessions
        self._settings = settings or UploadSettings()
        self._adapter_factory = adapter_factory
        self._multipart_threshold = multipart_threshold or self._settings.multipart_threshold_mb * MB
        self._part_size = part_size or self._settings.part_size_mb * MB

    @property
    def sessions(self) -> UploadSessionStore:
        return self._sessions

    @property
    def multipart_threshold(self) -> int:
        return self._multipart_threshold

    @property
    def part_size(self) -> int:
        return self._part_size

    def fingerprint(self, config: StorageConfig, path: Path, key: str) -> UploadFingerprint:
        stat = path.stat()
        return UploadFingerprint(
            account_id=config.account_id,
            bucket=config.bucket,
            object_key=key,
            file_name=path.name,
            file_size=stat.st_size,
            file_mtime=int(stat.st_mtime),
        )

    def check_resumable_upload(
        self, config: StorageConfig, path: Path | str, key: str
    ) -> Optional[UploadSession]:
        """Return the session an upload of ``path`` to ``key`` would resume, if any."""
        return self._sessions.find_resumable_session(self.fingerprint(config, Path(path), key))

    def upload_file(
        self,
        config: StorageConfig,
        path: Path | str,
        key: str,
        *,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload ``path`` to ``key`` in the bucket addressed by ``config``.

        Args:
            config: Destination location.
            path: Local file to upload.
            key: Destination object key.
            content_type: MIME type; guessed from the file name when omitted.
            cancel_event: Cooperative cancellation signal.
            on_progress: Receives progress after every completed part.

        Returns:
            UploadResult: Size and path taken by the upload.

        Raises:
            UploadCancelledError: If ``cancel_event`` was set; multipart state is kept.
            UploadError: If the file cannot be read.
            ProviderError: If the provider rejected a request.
        """
        source = Path(path).expanduser()
        try:
            fingerprint = self.fingerprint(config, source, key)
        except OSError as exc:
            raise UploadError(f"Failed to get file metadata: {exc}") from exc
        if content_type is None:
            content_type = mimetypes.guess_type(source.name)[0] or "application/octet-stream"
        cancel = cancel_event or threading.Event()
        adapter = self._adapter_factory(config)

        if fingerprint.file_size < self.multipart_threshold:
            return self._upload_single(
                adapter, source, key, fingerprint.file_size, content_type, cancel, on_progress
            )
        return self._upload_multipart(adapter, source, fingerprint, content_type, cancel, on_progress)

    def cleanup_old_sessions(self, max_age_days: Optional[int] = None) -> int:
        days = self._settings.session_max_age_days if max_age_days is None else max_age_days
        removed = self._sessions.cleanup_old_sessions(days)
        if removed:
            LOGGER.info("Removed %d stale upload sessions", removed)
        return removed

    # ------------------------------------------------------------------ #
    # Upload paths                                                       #
    # ------------------------------------------------------------------ #

    def _upload_single(
        self,
        adapter: StorageAdapter,
        source: Path,
        key: str,
        size: int,
        content_type: str,
        cancel: threading.Event,
        on_progress: Optional[ProgressCallback],
    ) -> UploadResult:
        if cancel.is_set():
            raise UploadCancelledError("Upload cancelled")
        meter = _ProgressMeter(size, on_progress)
        try:
            with source.open("rb") as handle:
                etag = adapter.put_object(key, handle, content_type=content_type)
        except OSError as exc:
            raise UploadError(f"Failed to read {source}: {exc}") from exc
        meter.finish()
        return UploadResult(key=key, size=size, etag=etag)

    def _resume(
        self, adapter: StorageAdapter, fingerprint: UploadFingerprint
    ) -> tuple[Optional[UploadSession], dict[int, UploadedPart]]:
        session = self._sessions.find_resumable_session(fingerprint)
        if session is None:
            return None, {}
        try:
            remote = {part.part_number for part in adapter.list_parts(fingerprint.object_key, session.upload_id)}
        except ObjectNotFoundError:
            LOGGER.info("Remote multipart upload for %s is gone; starting fresh", fingerprint.object_key)
            self._sessions.delete_session(session.id)
            return None, {}
        completed = {
            part.part_number: part
            for part in self._sessions.get_completed_parts(session.id)
            if part.part_number in remote
        }
        LOGGER.info("Resuming upload of %s with %d parts done", fingerprint.object_key, len(completed))
        return session, completed

    def _upload_multipart(
        self,
        adapter: StorageAdapter,
        source: Path,
        fingerprint: UploadFingerprint,
        content_type: str,
        cancel: threading.Event,
        on_progress: Optional[ProgressCallback],
    ) -> UploadResult:
        key = fingerprint.object_key
        size = fingerprint.file_size
        part_size = self.part_size
        total_parts = math.ceil(size / part_size)

        session, completed = self._resume(adapter, fingerprint)
        if session is None:
            upload_id = adapter.create_multipart_upload(key, content_type=content_type)
            session = self._sessions.create_session(
                fingerprint,
                file_path=str(source),
                upload_id=upload_id,
                total_parts=total_parts,
                content_type=content_type,
            )
        self._sessions.update_session_status(session.id, SessionStatus.UPLOADING)

        def _length(number: int) -> int:
            return min(part_size, size - (number - 1) * part_size)

        resumed = len(completed)
        meter = _ProgressMeter(size, on_progress, initial=sum(_length(n) for n in completed))
        checkpoint = _PartCheckpointer(
            self._sessions, session.id, self._settings.checkpoint_interval_seconds
        )

        try:
            parts = self._run_parts(
                adapter, source, session, completed, total_parts, _length, checkpoint, meter, cancel
            )
            if cancel.is_set():
                raise UploadCancelledError("Upload cancelled")
            adapter.complete_multipart_upload(key, session.upload_id, parts)
        except UploadCancelledError:
            checkpoint.flush()
            self._sessions.update_session_status(session.id, SessionStatus.CANCELLED)
            LOGGER.info("Upload of %s cancelled; session kept for resume", key)
            raise
        except Exception:
            LOGGER.warning("Upload of %s failed; aborting multipart upload", key)
            try:
                adapter.abort_multipart_upload(key, session.upload_id)
            except ProviderError as exc:
                LOGGER.warning("Abort of multipart upload for %s failed: %s", key, exc)
            self._sessions.delete_session(session.id)
            raise

        self._sessions.delete_session(session.id)
        meter.finish()
        return UploadResult(key=key, size=size, multipart=True, resumed_parts=resumed)

    def _run_parts(
        self,
        adapter: StorageAdapter,
        source: Path,
        session: UploadSession,
        completed: dict[int, UploadedPart],
        total_parts: int,
        length: Callable[[int], int],
        checkpoint: _PartCheckpointer,
        meter: _ProgressMeter,
        cancel: threading.Event,
    ) -> list[UploadedPart]:
        concurrency = self._settings.max_concurrent_parts
        slots = threading.BoundedSemaphore(concurrency + self._settings.prefetch_parts)
        failed = threading.Event()
        results = dict(completed)
        results_lock = threading.Lock()

        def _send(number: int, data: bytes) -> None:
            try:
                if cancel.is_set() or failed.is_set():
                    raise UploadCancelledError("Upload cancelled")
                etag = adapter.upload_part(session.object_key, session.upload_id, number, data)
                part = UploadedPart(part_number=number, etag=etag)
                with results_lock:
                    results[number] = part
                checkpoint.add(part)
                meter.advance(len(data))
            except BaseException:
                failed.set()
                raise
            finally:
                slots.release()

        futures: list[Future] = []
        try:
            with source.open("rb") as handle, ThreadPoolExecutor(
                max_workers=concurrency, thread_name_prefix="upload-part"
            ) as pool:
                for number in range(1, total_parts + 1):
                    if number in completed:
                        continue
                    if not _acquire(slots, cancel, failed):
                        break
                    handle.seek((number - 1) * self.part_size)
                    futures.append(pool.submit(_send, number, handle.read(length(number))))
                wait(futures)
        except OSError as exc:
            raise UploadError(f"Failed to read {source}: {exc}") from exc

        if cancel.is_set():
            raise UploadCancelledError("Upload cancelled")
        for future in futures:
            error = future.exception()
            if error is not None and not isinstance(error, UploadCancelledError):
                raise error
        return sorted(results.values(), key=lambda part: part.part_number)


__all__ = ["UploadEngine", "ProgressCallback"]
