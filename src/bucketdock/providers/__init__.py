"""Storage provider adapters for R2, AWS S3, MinIO, and RustFS."""

from __future__ import annotations

from typing import Callable

from .base import StorageAdapter
from .errors import CredentialError, ObjectNotFoundError, ProviderError, UnsupportedProviderError
from .models import (
    AwsConfig,
    BatchDeleteResult,
    BatchMoveResult,
    Bucket,
    ListPage,
    MinioConfig,
    MoveOperation,
    R2Config,
    RustfsConfig,
    StorageConfig,
    StorageObject,
    SyncResult,
    UploadedPart,
    parse_storage_config,
)
from .s3 import ADAPTERS
from .urls import build_bucket_base_url, build_public_url

AdapterFactory = Callable[[StorageConfig], StorageAdapter]


def get_adapter(config: StorageConfig) -> StorageAdapter:
    """Return the adapter registered for ``config.provider``.

    Args:
        config: Provider configuration addressing one bucket.

    Returns:
        StorageAdapter: Adapter bound to ``config``.

    Raises:
        UnsupportedProviderError: If the provider tag is unknown.
        CredentialError: If the configuration is missing required fields.
    """
    adapter_cls = ADAPTERS.get(config.provider)
    if adapter_cls is None:
        raise UnsupportedProviderError(f"Unsupported provider: {config.provider}")
    return adapter_cls(config)


__all__ = [
    "AdapterFactory",
    "StorageAdapter",
    "get_adapter",
    "ProviderError",
    "CredentialError",
    "ObjectNotFoundError",
    "UnsupportedProviderError",
    "StorageConfig",
    "R2Config",
    "AwsConfig",
    "MinioConfig",
    "RustfsConfig",
    "parse_storage_config",
    "Bucket",
    "StorageObject",
    "ListPage",
    "MoveOperation",
    "BatchDeleteResult",
    "BatchMoveResult",
    "UploadedPart",
    "SyncResult",
    "build_bucket_base_url",
    "build_public_url",
]
