"""Errors raised by storage provider adapters."""


class ProviderError(Exception):
    """Base exception for provider operations."""


class CredentialError(ProviderError):
    """Raised when a configuration is missing credentials, region, or endpoint."""


class ObjectNotFoundError(ProviderError):
    """Raised when an object or multipart upload no longer exists remotely."""


class UnsupportedProviderError(ProviderError):
    """Raised when no adapter is registered for a provider tag."""
