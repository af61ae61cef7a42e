"""Models for cached object metadata and the aggregated directory tree."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CacheModel(BaseModel):
    """Base model for cache rows."""

    model_config = ConfigDict(extra="forbid")


class CachedFile(CacheModel):
    """Object metadata persisted for one ``(account, bucket)`` scope.

    Attributes:
        bucket: Bucket name.
        account_id: Account identifier.
        key: Full object key.
        parent_path: Folder prefix with trailing slash ("" for root-level keys).
        name: Final key segment.
        size: Object size in bytes.
        last_modified: ISO-8601 modification timestamp.
        synced_at: Unix seconds when the row was written.
    """

    bucket: str
    account_id: str
    key: str
    parent_path: str
    name: str
    size: int = 0
    last_modified: str = ""
    synced_at: int = 0


class DirectoryNode(CacheModel):
    """Aggregated statistics for one folder prefix.

    Attributes:
        path: Folder prefix with trailing slash; "" is the bucket root.
        parent_path: Prefix of the containing folder, ``None`` for the root.
        file_count: Objects directly inside the folder.
        total_file_count: Objects anywhere below the folder.
        size: Bytes of direct children.
        total_size: Bytes anywhere below the folder.
        last_modified: Maximum modification timestamp below the folder.
        last_updated: Unix seconds when the node was computed.
    """

    bucket: str = ""
    account_id: str = ""
    path: str
    parent_path: Optional[str] = None
    file_count: int = 0
    total_file_count: int = 0
    size: int = 0
    total_size: int = 0
    last_modified: Optional[str] = None
    last_updated: int = 0


class FolderContents(CacheModel):
    """Single-level listing served from the cache."""

    files: list[CachedFile] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)


class SearchResult(CacheModel):
    """Search hits across a whole scope."""

    files: list[CachedFile] = Field(default_factory=list)
    total_count: int = 0


class SyncMeta(CacheModel):
    """Completion record for the last successful sync of a scope."""

    bucket: str
    account_id: str
    last_sync: int
    file_count: int


class TreeDelta(CacheModel):
    """Folder paths that disappeared or appeared after an incremental patch."""

    removed_paths: list[str] = Field(default_factory=list)
    created_paths: list[str] = Field(default_factory=list)


__all__ = [
    "CachedFile",
    "DirectoryNode",
    "FolderContents",
    "SearchResult",
    "SyncMeta",
    "TreeDelta",
]
