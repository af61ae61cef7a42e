"""Sync pipeline errors."""


class SyncError(Exception):
    """Raised when a sync run fails; the previous snapshot stays published."""


class SyncInProgressError(SyncError):
    """Raised when a scope is already being synced."""
