"""Bucket sync pipeline: fetch, store, index."""

from .errors import SyncError, SyncInProgressError
from .pipeline import SyncPhase, SyncPipeline

__all__ = ["SyncPipeline", "SyncPhase", "SyncError", "SyncInProgressError"]
