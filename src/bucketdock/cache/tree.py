"""Key parsing and bottom-up directory aggregation."""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable, Iterable, Optional, Protocol

from .models import DirectoryNode

ProgressCallback = Callable[[int, int], None]


class _Sized(Protocol):
    key: str
    size: int
    last_modified: str


def parse_key(key: str) -> tuple[str, str]:
    """Split ``key`` into ``(parent_path, name)``; parent keeps its trailing slash."""
    index = key.rfind("/")
    if index < 0:
        return "", key
    return key[: index + 1], key[index + 1 :]


def parent_folder(path: str) -> Optional[str]:
    """Return the containing folder of a folder prefix, ``None`` for the root."""
    if not path:
        return None
    return parse_key(path[:-1])[0]


def ancestor_paths(key: str) -> list[str]:
    """Return the root plus every folder prefix above ``key``, shallowest first."""
    parent, _ = parse_key(key)
    paths = [""]
    if not parent:
        return paths
    segments = parent[:-1].split("/")
    for depth in range(1, len(segments) + 1):
        paths.append("/".join(segments[:depth]) + "/")
    return paths


def get_unique_parent_paths(keys: Iterable[str]) -> list[str]:
    """Return the sorted union of ancestor folder prefixes for ``keys``."""
    unique: set[str] = set()
    for key in keys:
        unique.update(ancestor_paths(key))
    return sorted(unique)


def build_directory_tree(
    files: Iterable[_Sized],
    *,
    bucket: str = "",
    account_id: str = "",
    progress: Optional[ProgressCallback] = None,
    progress_interval: int = 100,
    now: Optional[int] = None,
) -> list[DirectoryNode]:
    """Compute aggregated nodes for every folder implied by ``files``.

    Folders are processed deepest first so each node can sum the totals of its
    already computed children. The root node is always present.

    Args:
        files: Objects carrying ``key``, ``size`` and ``last_modified``.
        bucket: Bucket recorded on the produced nodes.
        account_id: Account recorded on the produced nodes.
        progress: Optional callback receiving ``(current, total)`` folder counts.
        progress_interval: Folder count between progress callbacks.
        now: Timestamp recorded as ``last_updated``; defaults to the current time.

    Returns:
        list[DirectoryNode]: Nodes ordered deepest first, root last.
    """
    direct: dict[str, list[_Sized]] = {"": []}
    children: dict[str, set[str]] = defaultdict(set)
    for item in files:
        for path in ancestor_paths(item.key)[1:]:
            if path not in direct:
                direct[path] = []
                children[parent_folder(path) or ""].add(path)
        direct[parse_key(item.key)[0]].append(item)

    ordered = sorted(direct, key=lambda path: path.count("/"), reverse=True)
    total = len(ordered)
    stamp = int(time.time()) if now is None else now
    if progress is not None:
        progress(0, total)

    computed: dict[str, DirectoryNode] = {}
    for index, path in enumerate(ordered, start=1):
        own = direct[path]
        size = sum(item.size for item in own)
        count = len(own)
        stamps = [item.last_modified for item in own if item.last_modified]
        total_size, total_count = size, count
        for child in children.get(path, ()):
            node = computed[child]
            total_size += node.total_size
            total_count += node.total_file_count
            if node.last_modified:
                stamps.append(node.last_modified)

        computed[path] = DirectoryNode(
            bucket=bucket,
            account_id=account_id,
            path=path,
            parent_path=parent_folder(path),
            file_count=count,
            total_file_count=total_count,
            size=size,
            total_size=total_size,
            last_modified=max(stamps) if stamps else None,
            last_updated=stamp,
        )
        if progress is not None and (index % progress_interval == 0 or index == total):
            progress(index, total)

    return [computed[path] for path in ordered]


__all__ = [
    "ProgressCallback",
    "parse_key",
    "parent_folder",
    "ancestor_paths",
    "get_unique_parent_paths",
    "build_directory_tree",
]
