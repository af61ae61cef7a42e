"""Three-phase bucket sync that republishes a scope's cache snapshot."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from bucketdock.cache import CacheError, CacheStore, build_directory_tree
from bucketdock.config.models import SyncSettings
from bucketdock.events import (
    INDEXING_PROGRESS,
    SYNC_PHASE,
    SYNC_PROGRESS,
    EventBus,
    IndexingProgressEvent,
    SyncPhaseEvent,
    SyncProgressEvent,
)
from bucketdock.providers import AdapterFactory, ProviderError, StorageConfig, StorageObject, get_adapter
from bucketdock.providers.models import SyncResult

from .errors import SyncError, SyncInProgressError

LOGGER = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """Phases of a sync run, in order."""

    IDLE = "idle"
    FETCHING = "fetching"
    STORING = "storing"
    INDEXING = "indexing"
    COMPLETE = "complete"


class SyncPipeline:
    """Repopulate the local cache of one scope from the provider.

    Fetching lists every object, storing writes the listing into staging
    tables, indexing computes the directory tree from the staged rows, and a
    final transaction swaps both into the live tables. Readers therefore see
    either the previous snapshot or the new one.
    """

    def __init__(
        self,
        cache: CacheStore,
        events: EventBus,
        *,
        settings: Optional[SyncSettings] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self._cache = cache
        self._events = events
        self._settings = settings or SyncSettings()
        self._adapter_factory = adapter_factory
        self._lock = threading.Lock()
        self._phases: dict[tuple[str, str], SyncPhase] = {}
        self._threads: dict[tuple[str, str], threading.Thread] = {}

    def phase(self, account_id: str, bucket: str) -> SyncPhase:
        """Return the current phase of a scope (``idle`` when no run is active)."""
        with self._lock:
            return self._phases.get((account_id, bucket), SyncPhase.IDLE)

    def is_syncing(self, account_id: str, bucket: str) -> bool:
        phase = self.phase(account_id, bucket)
        return phase not in (SyncPhase.IDLE, SyncPhase.COMPLETE)

    def sync(self, config: StorageConfig) -> SyncResult:
        """Run a full sync of ``config``'s scope on the calling thread.

        Args:
            config: Location to sync.

        Returns:
            SyncResult: Number of cached objects and the completion timestamp.

        Raises:
            SyncInProgressError: If the scope is already syncing.
            SyncError: If any phase fails; staged rows are discarded.
        """
        account_id, bucket = config.scope
        self._claim(account_id, bucket)
        try:
            return self._run(config)
        except (ProviderError, CacheError) as exc:
            LOGGER.error("Sync of %s/%s failed: %s", account_id, bucket, exc)
            self._cache.discard_staged(account_id, bucket)
            raise SyncError(f"Sync of {account_id}/{bucket} failed: {exc}") from exc
        finally:
            with self._lock:
                self._phases.pop((account_id, bucket), None)

    def request_sync(
        self,
        config: StorageConfig,
        *,
        on_done: Optional[Callable[[Optional[SyncResult], Optional[Exception]], None]] = None,
    ) -> bool:
        """Start a background sync unless one is already running for the scope.

        Returns:
            bool: ``False`` when the request was ignored because of an in-flight run.
        """
        scope = config.scope
        with self._lock:
            running = self._threads.get(scope)
            if running is not None and running.is_alive():
                LOGGER.info("Ignoring sync request for %s/%s; already running", *scope)
                return False

            def _target() -> None:
                result: Optional[SyncResult] = None
                error: Optional[Exception] = None
                try:
                    result = self.sync(config)
                except SyncError as exc:
                    error = exc
                if on_done is not None:
                    on_done(result, error)

            thread = threading.Thread(target=_target, name=f"sync-{scope[0]}-{scope[1]}", daemon=True)
            self._threads[scope] = thread
        thread.start()
        return True

    def wait(self, config: StorageConfig, timeout: Optional[float] = None) -> None:
        """Block until a background sync of ``config``'s scope finishes."""
        with self._lock:
            thread = self._threads.get(config.scope)
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _claim(self, account_id: str, bucket: str) -> None:
        with self._lock:
            current = self._phases.get((account_id, bucket), SyncPhase.IDLE)
            if current not in (SyncPhase.IDLE, SyncPhase.COMPLETE):
                raise SyncInProgressError(f"Sync already running for {account_id}/{bucket}")
            self._phases[(account_id, bucket)] = SyncPhase.FETCHING

    def _enter(self, account_id: str, bucket: str, phase: SyncPhase) -> None:
        with self._lock:
            self._phases[(account_id, bucket)] = phase
        LOGGER.debug("Sync %s/%s -> %s", account_id, bucket, phase.value)
        self._events.emit(
            SYNC_PHASE, SyncPhaseEvent(account_id=account_id, bucket=bucket, phase=phase.value)
        )

    def _run(self, config: StorageConfig) -> SyncResult:
        account_id, bucket = config.scope
        adapter = self._adapter_factory(config)

        self._enter(account_id, bucket, SyncPhase.FETCHING)
        objects: list[StorageObject] = []
        for page in adapter.iter_all_objects(page_size=self._settings.page_size):
            objects.extend(page)
            self._events.emit(
                SYNC_PROGRESS,
                SyncProgressEvent(account_id=account_id, bucket=bucket, count=len(objects)),
            )

        self._enter(account_id, bucket, SyncPhase.STORING)
        stored = self._cache.stage_files(
            account_id, bucket, objects, batch_size=self._settings.insert_batch_size
        )
        self._events.emit(
            SYNC_PROGRESS, SyncProgressEvent(account_id=account_id, bucket=bucket, count=stored)
        )

        self._enter(account_id, bucket, SyncPhase.INDEXING)

        def _report(current: int, total: int) -> None:
            self._events.emit(
                INDEXING_PROGRESS,
                IndexingProgressEvent(account_id=account_id, bucket=bucket, current=current, total=total),
            )

        nodes = build_directory_tree(
            self._cache.get_staged_files(account_id, bucket),
            bucket=bucket,
            account_id=account_id,
            progress=_report,
            progress_interval=self._settings.index_progress_interval,
        )
        self._cache.stage_directory_tree(
            account_id, bucket, nodes, batch_size=self._settings.insert_batch_size
        )

        completed_at = int(time.time())
        count = self._cache.publish_staged(account_id, bucket, completed_at=completed_at)
        self._enter(account_id, bucket, SyncPhase.COMPLETE)
        LOGGER.info("Synced %d objects for %s/%s", count, account_id, bucket)
        return SyncResult(count=count, completed_at=completed_at)


__all__ = ["SyncPhase", "SyncPipeline"]
