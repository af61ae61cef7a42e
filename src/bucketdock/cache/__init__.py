"""Local relational cache of bucket listings and folder aggregates."""

from .database import Database
from .errors import CacheError, CacheNotReadyError
from .models import CachedFile, DirectoryNode, FolderContents, SearchResult, SyncMeta, TreeDelta
from .store import CacheStore
from .tree import ancestor_paths, build_directory_tree, get_unique_parent_paths, parse_key

__all__ = [
    "Database",
    "CacheStore",
    "CacheError",
    "CacheNotReadyError",
    "CachedFile",
    "DirectoryNode",
    "FolderContents",
    "SearchResult",
    "SyncMeta",
    "TreeDelta",
    "ancestor_paths",
    "build_directory_tree",
    "get_unique_parent_paths",
    "parse_key",
]
