"""Local cache errors."""


class CacheError(Exception):
    """Base exception for cache database operations."""


class CacheNotReadyError(CacheError):
    """Raised when a scope is read before its first sync completed."""
