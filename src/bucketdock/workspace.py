"""Application root wiring storage, cache, sync, and the transfer queues together.

``Workspace`` owns every long-lived service and exposes the backend command
surface as methods. Provider-mutating commands keep the local cache in step
by applying targeted patches after the provider call succeeds.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Sequence

from bucketdock.cache import (
    CachedFile,
    CacheNotReadyError,
    CacheStore,
    Database,
    DirectoryNode,
    FolderContents,
    SearchResult,
)
from bucketdock.config.models import BucketDockConfig
from bucketdock.download import DownloadQueue, DownloadSessionRepository, DownloadTask
from bucketdock.events import (
    BATCH_DELETE_PROGRESS,
    BATCH_MOVE_PROGRESS,
    BatchProgressEvent,
    EventBus,
)
from bucketdock.providers import (
    AdapterFactory,
    BatchDeleteResult,
    BatchMoveResult,
    Bucket,
    ListPage,
    MoveOperation,
    StorageAdapter,
    StorageConfig,
    StorageObject,
    SyncResult,
    get_adapter,
)
from bucketdock.sync import SyncPipeline
from bucketdock.transfer import CacheUpdateQueue, MoveSessionRepository, MoveTask, TransferQueue
from bucketdock.transfer.queue import OperationLike
from bucketdock.upload import UploadEngine, UploadQueue, UploadResult, UploadSessionStore
from bucketdock.upload.engine import ProgressCallback

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Workspace:
    """Long-lived owner of the backend services for one database."""

    def __init__(
        self,
        database: Database,
        *,
        config: Optional[BucketDockConfig] = None,
        events: Optional[EventBus] = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self._config = config or BucketDockConfig()
        self._db = database
        self._events = events or EventBus()
        self._adapter_factory = adapter_factory
        self._adapters: dict[str, StorageAdapter] = {}
        self._adapters_lock = threading.Lock()

        self.cache = CacheStore(database, events=self._events)
        self.sync = SyncPipeline(
            self.cache, self._events, settings=self._config.sync, adapter_factory=self.adapter
        )
        self.cache_updates = CacheUpdateQueue(
            self.cache, delay_seconds=self._config.transfer.cache_flush_delay_ms / 1000.0
        )
        self.moves = TransferQueue(
            MoveSessionRepository(database),
            self._events,
            settings=self._config.transfer,
            cache=self.cache,
            cache_updates=self.cache_updates,
            adapter_factory=self.adapter,
        )
        self.uploads = UploadEngine(
            UploadSessionStore(database), settings=self._config.upload, adapter_factory=self.adapter
        )
        self.upload_queue = UploadQueue(
            self.uploads,
            self._events,
            max_concurrent_uploads=self._config.upload.max_concurrent_uploads,
            cache=self.cache,
        )
        self.downloads = DownloadQueue(
            DownloadSessionRepository(database),
            self._events,
            settings=self._config.download,
            cache=self.cache,
            adapter_factory=self.adapter,
        )
        self.moves.pause_stale_moves_on_startup()
        self.downloads.pause_stale_downloads_on_startup()

    @classmethod
    def from_config(
        cls,
        config: BucketDockConfig,
        *,
        adapter_factory: AdapterFactory = get_adapter,
        database_path: Optional[Path | str] = None,
    ) -> "Workspace":
        """Open the database named by ``config.storage`` and build a workspace."""
        path = database_path or Path(config.storage.database_path).expanduser()
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        return cls(Database(path), config=config, adapter_factory=adapter_factory)

    @property
    def config(self) -> BucketDockConfig:
        return self._config

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def database(self) -> Database:
        return self._db

    def adapter(self, config: StorageConfig) -> StorageAdapter:
        """Return a cached adapter for ``config``'s location."""
        key = config.registry_key
        with self._adapters_lock:
            adapter = self._adapters.get(key)
            if adapter is None or adapter.config != config:
                adapter = self._adapter_factory(config)
                self._adapters[key] = adapter
            return adapter

    def close(self) -> None:
        """Stop background work and close the database."""
        self.upload_queue.shutdown(wait=True)
        self.downloads.shutdown(wait=True)
        self.moves.shutdown(wait=True)
        self.cache_updates.flush()
        self._db.close()

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Provider commands                                                  #
    # ------------------------------------------------------------------ #

    def list_buckets(self, config: StorageConfig) -> list[Bucket]:
        return self.adapter(config).list_buckets()

    def list_objects(
        self,
        config: StorageConfig,
        prefix: str = "",
        *,
        cursor: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ListPage:
        return self.adapter(config).list_objects(prefix=prefix, cursor=cursor, max_keys=max_keys)

    def list_all_objects(self, config: StorageConfig) -> list[StorageObject]:
        return self.adapter(config).list_all_objects(page_size=self._config.sync.page_size)

    def delete_object(self, config: StorageConfig, key: str) -> None:
        self.adapter(config).delete_object(key)
        self.cache.apply_delete(config.account_id, config.bucket, [key])

    def rename_object(self, config: StorageConfig, old_key: str, new_key: str) -> None:
        self.adapter(config).rename_object(old_key, new_key)
        self.cache.apply_move(config.account_id, config.bucket, [(old_key, new_key)])

    def batch_delete_objects(self, config: StorageConfig, keys: Iterable[str]) -> BatchDeleteResult:
        """Delete many keys, reporting ``batch-delete-progress`` and patching the cache."""
        account_id, bucket = config.scope

        def _progress(processed: int, total: int) -> None:
            self._events.emit(
                BATCH_DELETE_PROGRESS,
                BatchProgressEvent(account_id=account_id, bucket=bucket, processed=processed, total=total),
            )

        result = self.adapter(config).batch_delete_objects(keys, on_progress=_progress)
        if result.deleted_keys:
            self.cache.apply_delete(account_id, bucket, result.deleted_keys)
        if result.failed:
            LOGGER.warning("Batch delete in %s/%s: %d failed", account_id, bucket, result.failed)
        return result

    def batch_move_objects(
        self, config: StorageConfig, operations: Iterable[OperationLike]
    ) -> BatchMoveResult:
        """Rename many keys, reporting ``batch-move-progress`` and patching the cache."""
        account_id, bucket = config.scope
        normalized = [
            op if isinstance(op, MoveOperation) else MoveOperation(old_key=op[0], new_key=op[1])
            for op in operations
        ]

        def _progress(processed: int, total: int) -> None:
            self._events.emit(
                BATCH_MOVE_PROGRESS,
                BatchProgressEvent(account_id=account_id, bucket=bucket, processed=processed, total=total),
            )

        result = self.adapter(config).batch_move_objects(normalized, on_progress=_progress)
        if result.moved_operations:
            self.cache.apply_move(
                account_id, bucket, [(op.old_key, op.new_key) for op in result.moved_operations]
            )
        if result.failed:
            LOGGER.warning("Batch move in %s/%s: %d failed", account_id, bucket, result.failed)
        return result

    def generate_signed_url(self, config: StorageConfig, key: str, expires_in: int = 3600) -> str:
        return self.adapter(config).generate_signed_url(key, expires_in)

    def build_public_url(self, config: StorageConfig, key: str) -> str:
        return self.adapter(config).build_public_url(key)

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
        """Upload one local file through the resumable engine and cache the result."""
        result = self.uploads.upload_file(
            config,
            path,
            key,
            content_type=content_type,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )
        self.cache.apply_upsert(
            config.account_id,
            config.bucket,
            [StorageObject(key=key, size=result.size, last_modified=_now_iso(), etag=result.etag or "")],
        )
        return result

    def upload_content(
        self,
        config: StorageConfig,
        key: str,
        content: bytes | str,
        *,
        content_type: Optional[str] = None,
    ) -> str:
        etag = self.adapter(config).upload_content(key, content, content_type=content_type)
        size = len(content.encode("utf-8") if isinstance(content, str) else content)
        self.cache.apply_upsert(
            config.account_id,
            config.bucket,
            [StorageObject(key=key, size=size, last_modified=_now_iso(), etag=etag)],
        )
        return etag

    def sync_bucket(self, config: StorageConfig) -> SyncResult:
        return self.sync.sync(config)

    def request_sync(self, config: StorageConfig) -> bool:
        return self.sync.request_sync(config)

    # ------------------------------------------------------------------ #
    # Cache reads                                                        #
    # ------------------------------------------------------------------ #

    def is_cache_ready(self, config: StorageConfig) -> bool:
        return self.cache.last_sync_time(config.account_id, config.bucket) is not None

    def _require_cache(self, config: StorageConfig) -> tuple[str, str]:
        if not self.is_cache_ready(config):
            raise CacheNotReadyError(
                f"{config.account_id}/{config.bucket} has not been synced yet; run a sync first"
            )
        return config.scope

    def get_folder_contents(self, config: StorageConfig, prefix: str = "") -> FolderContents:
        """Return cached folder contents; raises ``CacheNotReadyError`` before the first sync."""
        account_id, bucket = self._require_cache(config)
        return self.cache.get_folder_contents(account_id, bucket, prefix)

    def search_cached_files(
        self, config: StorageConfig, query: str, *, limit: Optional[int] = None
    ) -> SearchResult:
        account_id, bucket = self._require_cache(config)
        return self.cache.search_files(account_id, bucket, query, limit=limit)

    def calculate_folder_size(self, config: StorageConfig, prefix: str) -> int:
        account_id, bucket = self._require_cache(config)
        return self.cache.calculate_folder_size(account_id, bucket, prefix)

    def build_directory_tree(self, config: StorageConfig) -> list[DirectoryNode]:
        return self.cache.build_directory_tree(config.account_id, config.bucket)

    def get_directory_node(self, config: StorageConfig, path: str) -> Optional[DirectoryNode]:
        account_id, bucket = self._require_cache(config)
        return self.cache.get_directory_node(account_id, bucket, path)

    def get_all_directory_nodes(self, config: StorageConfig) -> list[DirectoryNode]:
        account_id, bucket = self._require_cache(config)
        return self.cache.get_all_directory_nodes(account_id, bucket)

    def clear_file_cache(self, config: StorageConfig) -> None:
        self.cache.clear_cache(config.account_id, config.bucket)

    def store_all_files(self, config: StorageConfig, objects: Sequence[StorageObject]) -> None:
        self.cache.store_all_files(config.account_id, config.bucket, objects)

    def get_all_cached_files(self, config: StorageConfig) -> list[CachedFile]:
        return self.cache.get_all_cached_files(config.account_id, config.bucket)

    # ------------------------------------------------------------------ #
    # Move queue                                                         #
    # ------------------------------------------------------------------ #

    def enqueue_moves(
        self,
        source: StorageConfig,
        dest: StorageConfig,
        operations: Iterable[OperationLike],
        *,
        delete_original: bool = False,
    ) -> list[MoveTask]:
        return self.moves.enqueue_moves(source, dest, operations, delete_original=delete_original)

    def start_move_queue(self, source: StorageConfig, dest: StorageConfig) -> None:
        self.moves.start_move_queue(source, dest)

    def pause_all_moves(self, source: StorageConfig) -> list[str]:
        return self.moves.pause_all_moves(source.bucket, source.account_id)

    def resume_all_moves(self, source: StorageConfig) -> list[str]:
        return self.moves.resume_all_moves(source.bucket, source.account_id)

    def resume_move(self, task_id: str) -> MoveTask:
        return self.moves.resume_move(task_id)

    def pause_move(self, task_id: str) -> bool:
        return self.moves.pause_move(task_id)

    def cancel_move(self, task_id: str) -> bool:
        return self.moves.cancel_move(task_id)

    def delete_move(self, task_id: str) -> None:
        self.moves.delete_move(task_id)

    def clear_finished_moves(self, source: StorageConfig) -> list[str]:
        return self.moves.clear_finished_moves(source.bucket, source.account_id)

    def clear_all_moves(self, source: StorageConfig) -> list[str]:
        return self.moves.clear_all_moves(source.bucket, source.account_id)

    def get_move_tasks(self, source: StorageConfig) -> list[MoveTask]:
        return self.moves.get_move_tasks(source.bucket, source.account_id)

    def get_all_active_move_tasks(self) -> list[MoveTask]:
        return self.moves.get_all_active_move_tasks()

    # ------------------------------------------------------------------ #
    # Downloads                                                          #
    # ------------------------------------------------------------------ #

    def create_download_task(
        self,
        config: StorageConfig,
        object_key: str,
        local_path: str,
        *,
        file_name: Optional[str] = None,
        file_size: int = 0,
    ) -> DownloadTask:
        return self.downloads.create_download_task(
            config, object_key, local_path, file_name=file_name, file_size=file_size
        )

    def start_download_queue(self, config: StorageConfig) -> int:
        return self.downloads.start_download_queue(config)

    def start_all_downloads(self, config: StorageConfig) -> list[str]:
        return self.downloads.start_all_downloads(config)

    def pause_all_downloads(self, config: StorageConfig) -> list[str]:
        return self.downloads.pause_all_downloads(config.bucket, config.account_id)

    def pause_download(self, task_id: str) -> bool:
        return self.downloads.pause_download(task_id)

    def resume_download(self, config: StorageConfig, task_id: str) -> DownloadTask:
        """Requeue a download; ``config`` makes its bucket resolvable after a restart."""
        self.downloads.register_config(config)
        return self.downloads.resume_download(task_id)

    def cancel_download(self, task_id: str) -> bool:
        return self.downloads.cancel_download(task_id)

    def delete_download_task(self, task_id: str) -> None:
        self.downloads.delete_download_task(task_id)

    def get_download_tasks(self, config: StorageConfig) -> list[DownloadTask]:
        return self.downloads.get_download_tasks(config.bucket, config.account_id)

    def clear_finished_downloads(self, config: StorageConfig) -> list[str]:
        return self.downloads.clear_finished_downloads(config.bucket, config.account_id)

    def clear_all_downloads(self, config: StorageConfig) -> list[str]:
        return self.downloads.clear_all_downloads(config.bucket, config.account_id)


__all__ = ["Workspace"]
