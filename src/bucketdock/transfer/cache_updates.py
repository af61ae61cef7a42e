"""Debounced cache patches for objects removed by completed moves."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Optional

from bucketdock.cache import CacheError, CacheStore

LOGGER = logging.getLogger(__name__)


class CacheUpdateQueue:
    """Collect deleted keys per scope and flush them in one patch.

    The first key queued for an idle queue arms a timer; every key queued
    before it fires joins the same batch.
    """

    def __init__(self, cache: CacheStore, *, delay_seconds: float = 0.3) -> None:
        self._cache = cache
        self._delay = delay_seconds
        self._lock = threading.Lock()
        self._pending: dict[tuple[str, str], set[str]] = defaultdict(set)
        self._timer: Optional[threading.Timer] = None

    def queue_delete(self, account_id: str, bucket: str, key: str) -> None:
        with self._lock:
            self._pending[(account_id, bucket)].add(key)
            if self._timer is not None:
                return
            self._timer = threading.Timer(self._delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Apply every queued delete now."""
        with self._lock:
            batch = self._pending
            self._pending = defaultdict(set)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
        for (account_id, bucket), keys in batch.items():
            LOGGER.info("Flushing %d cached deletes for %s/%s", len(keys), account_id, bucket)
            try:
                self._cache.apply_delete(account_id, bucket, sorted(keys))
            except CacheError as exc:
                LOGGER.error("Cache delete flush failed for %s/%s: %s", account_id, bucket, exc)


__all__ = ["CacheUpdateQueue"]
