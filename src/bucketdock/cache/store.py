"""Scoped persistence of object metadata and the directory aggregation tree."""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import Text, delete, func, insert, select, true
from sqlalchemy.orm import Session

from bucketdock.events import (
    CACHE_UPDATED,
    PATHS_CREATED,
    PATHS_REMOVED,
    CacheUpdatedEvent,
    EventBus,
    PathsCreatedEvent,
    PathsRemovedEvent,
)
from bucketdock.providers.models import StorageObject

from .database import Database
from .models import CachedFile, DirectoryNode, FolderContents, SearchResult, SyncMeta, TreeDelta
from .tables import (
    CachedFileRow,
    DirectoryNodeRow,
    StagedDirectoryNodeRow,
    StagedFileRow,
    SyncMetaRow,
)
from .tree import (
    ProgressCallback,
    build_directory_tree,
    get_unique_parent_paths,
    parent_folder,
    parse_key,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

_FILE_FIELDS = tuple(column.name for column in CachedFileRow.__table__.columns)
_TREE_FIELDS = tuple(column.name for column in DirectoryNodeRow.__table__.columns)


def _scoped(model: Any, account_id: str, bucket: str) -> tuple:
    return (model.bucket == bucket, model.account_id == account_id)


def _under(column: Any, prefix: str) -> Any:
    """Case-sensitive ``startswith``; SQLite's LIKE folds ASCII case."""
    if not prefix:
        return true()
    return func.substr(column, 1, len(prefix)) == prefix


def _file_values(account_id: str, bucket: str, obj: StorageObject, synced_at: int) -> dict:
    parent, name = parse_key(obj.key)
    return {
        "bucket": bucket,
        "account_id": account_id,
        "key": obj.key,
        "parent_path": parent,
        "name": name,
        "size": obj.size,
        "last_modified": obj.last_modified,
        "synced_at": synced_at,
    }


def _node_values(node: DirectoryNode, account_id: str, bucket: str) -> dict:
    values = node.model_dump(include=set(_TREE_FIELDS))
    values.update(bucket=bucket, account_id=account_id)
    return values


def _to_file(row: Any) -> CachedFile:
    return CachedFile.model_validate(row, from_attributes=True)


def _to_node(row: Any) -> DirectoryNode:
    return DirectoryNode.model_validate(row, from_attributes=True)


class CacheStore:
    """Read and write cache rows for ``(account_id, bucket)`` scopes.

    Every query filters on both scope columns, so rows of one scope never
    appear in another scope's listings.
    """

    def __init__(self, database: Database, *, events: Optional[EventBus] = None) -> None:
        self._db = database
        self._events = events

    @property
    def database(self) -> Database:
        return self._db

    # ------------------------------------------------------------------ #
    # Bulk writes                                                        #
    # ------------------------------------------------------------------ #

    def store_all_files(
        self,
        account_id: str,
        bucket: str,
        objects: Sequence[StorageObject],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Replace the scope's file rows and record the sync metadata atomically."""
        now = int(time.time())
        with self._db.session() as session:
            session.execute(delete(CachedFileRow).where(*_scoped(CachedFileRow, account_id, bucket)))
            count = self._insert_files(session, CachedFileRow, account_id, bucket, objects, now, batch_size)
            self._record_sync(session, account_id, bucket, count, now)

    def stage_files(
        self,
        account_id: str,
        bucket: str,
        objects: Iterable[StorageObject],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> int:
        """Write a fresh listing into the staging table; live rows stay untouched.

        Returns:
            int: Number of staged rows.
        """
        now = int(time.time())
        materialized = list(objects)
        with self._db.session() as session:
            self._discard(session, account_id, bucket)
            return self._insert_files(
                session, StagedFileRow, account_id, bucket, materialized, now, batch_size
            )

    def get_staged_files(self, account_id: str, bucket: str) -> list[CachedFile]:
        with self._db.session() as session:
            rows = session.scalars(
                select(StagedFileRow).where(*_scoped(StagedFileRow, account_id, bucket))
            )
            return [_to_file(row) for row in rows]

    def stage_directory_tree(
        self,
        account_id: str,
        bucket: str,
        nodes: Sequence[DirectoryNode],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Write computed folder nodes into the staging tree table."""
        with self._db.session() as session:
            session.execute(
                delete(StagedDirectoryNodeRow).where(
                    *_scoped(StagedDirectoryNodeRow, account_id, bucket)
                )
            )
            self._insert_nodes(session, StagedDirectoryNodeRow, account_id, bucket, nodes, batch_size)

    def publish_staged(self, account_id: str, bucket: str, *, completed_at: int) -> int:
        """Swap staged files and tree into the live tables in one transaction.

        Returns:
            int: Number of files now cached for the scope.
        """
        staged_files = StagedFileRow.__table__.c
        staged_nodes = StagedDirectoryNodeRow.__table__.c
        with self._db.session() as session:
            session.execute(delete(CachedFileRow).where(*_scoped(CachedFileRow, account_id, bucket)))
            session.execute(
                insert(CachedFileRow).from_select(
                    _FILE_FIELDS,
                    select(*(staged_files[name] for name in _FILE_FIELDS)).where(
                        *_scoped(StagedFileRow, account_id, bucket)
                    ),
                )
            )
            session.execute(
                delete(DirectoryNodeRow).where(*_scoped(DirectoryNodeRow, account_id, bucket))
            )
            session.execute(
                insert(DirectoryNodeRow).from_select(
                    _TREE_FIELDS,
                    select(*(staged_nodes[name] for name in _TREE_FIELDS)).where(
                        *_scoped(StagedDirectoryNodeRow, account_id, bucket)
                    ),
                )
            )
            count = session.scalar(
                select(func.count())
                .select_from(CachedFileRow)
                .where(*_scoped(CachedFileRow, account_id, bucket))
            )
            self._record_sync(session, account_id, bucket, int(count or 0), completed_at)
            self._discard(session, account_id, bucket)
        return int(count or 0)

    def discard_staged(self, account_id: str, bucket: str) -> None:
        """Drop any staging rows left by an aborted sync."""
        with self._db.session() as session:
            self._discard(session, account_id, bucket)

    def build_directory_tree(
        self,
        account_id: str,
        bucket: str,
        *,
        progress: Optional[ProgressCallback] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> list[DirectoryNode]:
        """Rebuild the live tree from the live file rows of a scope."""
        files = self.get_all_cached_files(account_id, bucket)
        nodes = build_directory_tree(files, bucket=bucket, account_id=account_id, progress=progress)
        with self._db.session() as session:
            session.execute(
                delete(DirectoryNodeRow).where(*_scoped(DirectoryNodeRow, account_id, bucket))
            )
            self._insert_nodes(session, DirectoryNodeRow, account_id, bucket, nodes, batch_size)
        return nodes

    def clear_cache(self, account_id: str, bucket: str) -> None:
        """Forget every cached row, tree node and sync record of a scope."""
        with self._db.session() as session:
            for model in (CachedFileRow, DirectoryNodeRow, SyncMetaRow):
                session.execute(delete(model).where(*_scoped(model, account_id, bucket)))
            self._discard(session, account_id, bucket)

    # ------------------------------------------------------------------ #
    # Reads                                                              #
    # ------------------------------------------------------------------ #

    def get_sync_meta(self, account_id: str, bucket: str) -> Optional[SyncMeta]:
        with self._db.session() as session:
            row = session.get(SyncMetaRow, (bucket, account_id))
            return SyncMeta.model_validate(row, from_attributes=True) if row else None

    def last_sync_time(self, account_id: str, bucket: str) -> Optional[int]:
        """Return the completion time of the scope's last sync, ``None`` before the first."""
        meta = self.get_sync_meta(account_id, bucket)
        return meta.last_sync if meta else None

    def get_all_cached_files(self, account_id: str, bucket: str) -> list[CachedFile]:
        with self._db.session() as session:
            rows = session.scalars(
                select(CachedFileRow)
                .where(*_scoped(CachedFileRow, account_id, bucket))
                .order_by(CachedFileRow.key)
            )
            return [_to_file(row) for row in rows]

    def get_cached_file(self, account_id: str, bucket: str, key: str) -> Optional[CachedFile]:
        with self._db.session() as session:
            row = session.get(CachedFileRow, (bucket, account_id, key))
            return _to_file(row) if row else None

    def get_folder_contents(self, account_id: str, bucket: str, prefix: str = "") -> FolderContents:
        """Return direct files and subfolders of ``prefix``."""
        with self._db.session() as session:
            files = session.scalars(
                select(CachedFileRow)
                .where(*_scoped(CachedFileRow, account_id, bucket), CachedFileRow.parent_path == prefix)
                .order_by(CachedFileRow.name)
            )
            folders = session.scalars(
                select(DirectoryNodeRow.path)
                .where(
                    *_scoped(DirectoryNodeRow, account_id, bucket),
                    DirectoryNodeRow.parent_path == prefix,
                )
                .order_by(DirectoryNodeRow.path)
            )
            return FolderContents(files=[_to_file(row) for row in files], folders=list(folders))

    def search_files(
        self, account_id: str, bucket: str, query: str, *, limit: Optional[int] = None
    ) -> SearchResult:
        """Case-insensitive match of every whitespace-separated term against keys."""
        terms = [term.lower() for term in query.split()]
        if not terms:
            return SearchResult()
        conditions = [
            *_scoped(CachedFileRow, account_id, bucket),
            *(func.lower(CachedFileRow.key, type_=Text).contains(term, autoescape=True) for term in terms),
        ]
        statement = select(CachedFileRow).where(*conditions).order_by(CachedFileRow.key)
        if limit is not None:
            statement = statement.limit(int(limit))
        with self._db.session() as session:
            total = session.scalar(select(func.count()).select_from(CachedFileRow).where(*conditions))
            files = [_to_file(row) for row in session.scalars(statement)]
        return SearchResult(files=files, total_count=int(total or 0))

    def get_directory_node(self, account_id: str, bucket: str, path: str) -> Optional[DirectoryNode]:
        with self._db.session() as session:
            row = session.get(DirectoryNodeRow, (bucket, account_id, path))
            return _to_node(row) if row else None

    def get_all_directory_nodes(self, account_id: str, bucket: str) -> list[DirectoryNode]:
        with self._db.session() as session:
            rows = session.scalars(
                select(DirectoryNodeRow)
                .where(*_scoped(DirectoryNodeRow, account_id, bucket))
                .order_by(DirectoryNodeRow.path)
            )
            return [_to_node(row) for row in rows]

    def calculate_folder_size(self, account_id: str, bucket: str, prefix: str) -> int:
        """Sum object sizes under ``prefix`` straight from the file rows."""
        with self._db.session() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(CachedFileRow.size), 0)).where(
                    *_scoped(CachedFileRow, account_id, bucket), _under(CachedFileRow.key, prefix)
                )
            )
        return int(total or 0)

    # ------------------------------------------------------------------ #
    # Incremental patches                                                #
    # ------------------------------------------------------------------ #

    def apply_delete(self, account_id: str, bucket: str, keys: Sequence[str]) -> TreeDelta:
        """Drop deleted objects and refresh only their ancestor folders."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return TreeDelta()
        with self._db.session() as session:
            for start in range(0, len(keys), DEFAULT_BATCH_SIZE):
                session.execute(
                    delete(CachedFileRow).where(
                        *_scoped(CachedFileRow, account_id, bucket),
                        CachedFileRow.key.in_(keys[start : start + DEFAULT_BATCH_SIZE]),
                    )
                )
            delta = self._refresh_paths(session, account_id, bucket, get_unique_parent_paths(keys))
        self._announce(account_id, bucket, "delete", keys, delta)
        return delta

    def apply_move(
        self, account_id: str, bucket: str, moves: Sequence[tuple[str, str]]
    ) -> TreeDelta:
        """Rename cached rows in place, keeping size and timestamp."""
        if not moves:
            return TreeDelta()
        now = int(time.time())
        touched: list[str] = []
        with self._db.session() as session:
            for old_key, new_key in moves:
                existing = self.get_cached_file(account_id, bucket, old_key)
                session.execute(
                    delete(CachedFileRow).where(
                        *_scoped(CachedFileRow, account_id, bucket), CachedFileRow.key == old_key
                    )
                )
                if existing is None:
                    continue
                obj = StorageObject(key=new_key, size=existing.size, last_modified=existing.last_modified)
                session.merge(CachedFileRow(**_file_values(account_id, bucket, obj, now)))
                touched.extend((old_key, new_key))
            delta = self._refresh_paths(session, account_id, bucket, get_unique_parent_paths(touched))
        self._announce(account_id, bucket, "move", [key for pair in moves for key in pair], delta)
        return delta

    def apply_upsert(
        self, account_id: str, bucket: str, objects: Sequence[StorageObject]
    ) -> TreeDelta:
        """Insert or refresh rows for uploaded or updated objects."""
        if not objects:
            return TreeDelta()
        now = int(time.time())
        with self._db.session() as session:
            for obj in objects:
                session.merge(CachedFileRow(**_file_values(account_id, bucket, obj, now)))
            keys = [obj.key for obj in objects]
            delta = self._refresh_paths(session, account_id, bucket, get_unique_parent_paths(keys))
        self._announce(account_id, bucket, "update", keys, delta)
        return delta

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _insert_files(
        self,
        session: Session,
        model: Any,
        account_id: str,
        bucket: str,
        objects: Sequence[StorageObject],
        synced_at: int,
        batch_size: int,
    ) -> int:
        # The last entry wins when a listing repeats a key.
        rows = list({obj.key: _file_values(account_id, bucket, obj, synced_at) for obj in objects}.values())
        for start in range(0, len(rows), batch_size):
            session.execute(insert(model), rows[start : start + batch_size])
        return len(rows)

    def _insert_nodes(
        self,
        session: Session,
        model: Any,
        account_id: str,
        bucket: str,
        nodes: Sequence[DirectoryNode],
        batch_size: int,
    ) -> None:
        rows = list({node.path: _node_values(node, account_id, bucket) for node in nodes}.values())
        for start in range(0, len(rows), batch_size):
            session.execute(insert(model), rows[start : start + batch_size])

    def _record_sync(
        self, session: Session, account_id: str, bucket: str, count: int, completed_at: int
    ) -> None:
        session.merge(
            SyncMetaRow(bucket=bucket, account_id=account_id, last_sync=completed_at, file_count=count)
        )

    def _discard(self, session: Session, account_id: str, bucket: str) -> None:
        for model in (StagedFileRow, StagedDirectoryNodeRow):
            session.execute(delete(model).where(*_scoped(model, account_id, bucket)))

    def _refresh_paths(
        self, session: Session, account_id: str, bucket: str, paths: Sequence[str]
    ) -> TreeDelta:
        """Recompute the given folder nodes from file rows, deepest first."""
        now = int(time.time())
        delta = TreeDelta()
        scope = _scoped(CachedFileRow, account_id, bucket)
        for path in sorted(paths, key=lambda value: value.count("/"), reverse=True):
            existing = session.get(DirectoryNodeRow, (bucket, account_id, path))
            direct_count, direct_bytes = session.execute(
                select(func.count(), func.coalesce(func.sum(CachedFileRow.size), 0)).where(
                    *scope, CachedFileRow.parent_path == path
                )
            ).one()
            below_count, below_bytes, newest = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(CachedFileRow.size), 0),
                    func.max(CachedFileRow.last_modified),
                ).where(*scope, _under(CachedFileRow.key, path))
            ).one()
            if path and below_count == 0:
                if existing is not None:
                    session.delete(existing)
                    delta.removed_paths.append(path)
                continue
            session.merge(
                DirectoryNodeRow(
                    bucket=bucket,
                    account_id=account_id,
                    path=path,
                    parent_path=parent_folder(path),
                    file_count=int(direct_count),
                    total_file_count=int(below_count),
                    size=int(direct_bytes),
                    total_size=int(below_bytes),
                    last_modified=newest or None,
                    last_updated=now,
                )
            )
            if existing is None:
                delta.created_paths.append(path)
        return delta

    def _announce(
        self, account_id: str, bucket: str, action: str, keys: Sequence[str], delta: TreeDelta
    ) -> None:
        if self._events is None:
            return
        if delta.removed_paths:
            self._events.emit(
                PATHS_REMOVED,
                PathsRemovedEvent(account_id=account_id, bucket=bucket, removed_paths=delta.removed_paths),
            )
        if delta.created_paths:
            self._events.emit(
                PATHS_CREATED,
                PathsCreatedEvent(account_id=account_id, bucket=bucket, created_paths=delta.created_paths),
            )
        self._events.emit(
            CACHE_UPDATED,
            CacheUpdatedEvent(
                account_id=account_id,
                bucket=bucket,
                action=action,
                affected_paths=get_unique_parent_paths(keys),
            ),
        )


__all__ = ["CacheStore", "DEFAULT_BATCH_SIZE"]
