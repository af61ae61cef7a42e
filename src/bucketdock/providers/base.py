"""Provider-independent adapter contract.

Concrete adapters implement a small set of wire primitives; every higher-level
operation the rest of the package relies on (recursive listing, rename, batch
move/delete, content uploads) is expressed once here in terms of them.
"""

from __future__ import annotations

import logging
from collections import Counter
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Sequence

from .errors import ProviderError
from .models import (
    BatchDeleteResult,
    BatchMoveResult,
    Bucket,
    ListPage,
    MoveOperation,
    StorageConfig,
    StorageObject,
    UploadedPart,
)
from .urls import build_bucket_base_url, build_public_url

LOGGER = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 1000

BatchProgress = Callable[[int, int], None]


class StorageAdapter(ABC):
    """Uniform operations over one ``(account, bucket)`` location.

    Adapters hold no mutable state besides their immutable configuration and
    lazily created wire client, so they are safe to share across threads.
    """

    def __init__(self, config: StorageConfig) -> None:
        config.validate_credentials()
        self._config = config

    @property
    def config(self) -> StorageConfig:
        """Return the configuration this adapter addresses."""
        return self._config

    @property
    def provider(self) -> str:
        """Return the provider tag of the configuration."""
        return self._config.provider

    # ------------------------------------------------------------------ #
    # Wire primitives                                                    #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def list_buckets(self) -> list[Bucket]:
        """Return the buckets visible to the configured credentials."""

    @abstractmethod
    def list_objects(
        self,
        *,
        prefix: str = "",
        delimiter: str = "/",
        cursor: Optional[str] = None,
        max_keys: int = LIST_PAGE_SIZE,
    ) -> ListPage:
        """Return one page of objects and (when delimited) folder prefixes."""

    @abstractmethod
    def head_object(self, key: str) -> Optional[StorageObject]:
        """Return metadata for ``key`` or ``None`` when it does not exist."""

    @abstractmethod
    def open_object(self, key: str, byte_range: Optional[tuple[int, int]] = None) -> BinaryIO:
        """Open a readable stream over an object, optionally an inclusive byte range."""

    @abstractmethod
    def put_object(self, key: str, body: bytes | BinaryIO, *, content_type: Optional[str] = None) -> str:
        """Write an object in a single request and return its ETag."""

    @abstractmethod
    def copy_object(self, source: StorageConfig, source_key: str, dest_key: str) -> None:
        """Copy ``source_key`` from ``source`` into this bucket without streaming through the client."""

    @abstractmethod
    def delete_object(self, key: str) -> None:
        """Delete a single object."""

    @abstractmethod
    def delete_objects(self, keys: Sequence[str]) -> tuple[list[str], list[str]]:
        """Delete up to ``DELETE_BATCH_SIZE`` keys; return ``(deleted_keys, errors)``."""

    @abstractmethod
    def generate_signed_url(self, key: str, expires_in: int = 3600) -> str:
        """Return a presigned GET URL for ``key``."""

    @abstractmethod
    def create_multipart_upload(self, key: str, *, content_type: Optional[str] = None) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part and return its ETag."""

    @abstractmethod
    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[UploadedPart]
    ) -> None:
        """Stitch uploaded parts into the final object."""

    @abstractmethod
    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""

    @abstractmethod
    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        """Return parts already stored for a live multipart upload.

        Raises:
            ObjectNotFoundError: If the multipart upload no longer exists.
        """

    # ------------------------------------------------------------------ #
    # Composite operations                                               #
    # ------------------------------------------------------------------ #

    def iter_all_objects(self, *, page_size: int = LIST_PAGE_SIZE) -> Iterator[list[StorageObject]]:
        """Yield undelimited listing pages until the provider reports no more."""
        cursor: Optional[str] = None
        while True:
            page = self.list_objects(delimiter="", cursor=cursor, max_keys=page_size)
            yield page.objects
            if not page.truncated or not page.continuation_token:
                return
            cursor = page.continuation_token

    def list_all_objects(self, *, page_size: int = LIST_PAGE_SIZE) -> list[StorageObject]:
        """Return every object in the bucket."""
        objects: list[StorageObject] = []
        for batch in self.iter_all_objects(page_size=page_size):
            objects.extend(batch)
        return objects

    def rename_object(self, old_key: str, new_key: str) -> None:
        """Rename an object by server-side copy followed by delete of the old key."""
        if old_key == new_key:
            return
        self.copy_object(self._config, old_key, new_key)
        self.delete_object(old_key)

    def batch_delete_objects(
        self, keys: Iterable[str], *, on_progress: Optional[BatchProgress] = None
    ) -> BatchDeleteResult:
        """Delete many keys; failures are reported, never rolled back.

        Args:
            keys: Keys to delete.
            on_progress: Optional callback receiving ``(processed, total)``.

        Returns:
            BatchDeleteResult: Counts plus per-item error messages. Counts are
            per requested key, so a repeated key is counted once per
            occurrence while being sent to the provider only once.
        """
        occurrences = Counter(keys)
        unique = list(occurrences)
        result = BatchDeleteResult()
        total = sum(occurrences.values())
        processed = 0
        for start in range(0, len(unique), DELETE_BATCH_SIZE):
            chunk = unique[start : start + DELETE_BATCH_SIZE]
            try:
                deleted, errors = self.delete_objects(chunk)
            except ProviderError as exc:
                deleted, errors = [], [f"{key}: {exc}" for key in chunk]
            confirmed = set(deleted)
            for key in chunk:
                if key in confirmed:
                    result.deleted += occurrences[key]
                else:
                    result.failed += occurrences[key]
                processed += occurrences[key]
            result.deleted_keys.extend(deleted)
            result.errors.extend(errors)
            missing = len(chunk) - len(confirmed) - len(errors)
            if missing > 0:
                result.errors.extend(["unknown delete failure"] * missing)
            if on_progress is not None:
                on_progress(processed, total)
        return result

    def batch_move_objects(
        self,
        operations: Iterable[MoveOperation],
        *,
        on_progress: Optional[BatchProgress] = None,
    ) -> BatchMoveResult:
        """Rename many keys inside the bucket, reporting per-item failures.

        Args:
            operations: ``old_key`` to ``new_key`` pairs.
            on_progress: Optional callback receiving ``(processed, total)``.

        Returns:
            BatchMoveResult: ``moved + failed`` always equals the number of operations.
        """
        pending = list(operations)
        result = BatchMoveResult()
        total = len(pending)
        for index, operation in enumerate(pending, start=1):
            try:
                self.rename_object(operation.old_key, operation.new_key)
            except ProviderError as exc:
                LOGGER.warning("Move %s -> %s failed: %s", operation.old_key, operation.new_key, exc)
                result.failed += 1
                result.errors.append(f"{operation.old_key}: {exc}")
            else:
                result.moved += 1
                result.moved_operations.append(operation)
            if on_progress is not None:
                on_progress(index, total)
        return result

    def upload_content(
        self, key: str, content: bytes | str, *, content_type: Optional[str] = None
    ) -> str:
        """Write a small text or binary payload directly."""
        body = content.encode("utf-8") if isinstance(content, str) else content
        if content_type is None and isinstance(content, str):
            content_type = "text/plain; charset=utf-8"
        return self.put_object(key, body, content_type=content_type)

    def upload_file(self, path: Path, key: str, *, content_type: Optional[str] = None) -> str:
        """Write a local file in a single request."""
        with path.open("rb") as handle:
            return self.put_object(key, handle, content_type=content_type)

    def build_bucket_base_url(self) -> str:
        """Return the bucket's public or provider-native base URL."""
        return build_bucket_base_url(self._config)

    def build_public_url(self, key: str) -> str:
        """Return the public URL of ``key``."""
        return build_public_url(self._config, key)


__all__ = ["StorageAdapter", "LIST_PAGE_SIZE", "DELETE_BATCH_SIZE", "BatchProgress"]
