"""Typed models shared by storage provider adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .errors import CredentialError

ProviderName = Literal["r2", "aws", "minio", "rustfs"]


class ProviderModel(BaseModel):
    """Base class for provider-facing value objects."""

    model_config = ConfigDict(extra="forbid")


class _StorageConfigBase(ProviderModel):
    """Fields shared by every provider configuration.

    Attributes:
        account_id: Account identifier (R2 account id, or a local label for other providers).
        bucket: Bucket addressed by this configuration.
        access_key_id: S3 access key id.
        secret_access_key: S3 secret access key.
        public_domain: Optional CDN or custom domain that serves the bucket publicly.
        public_domain_scheme: Scheme to use with ``public_domain``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    bucket: str = ""
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    public_domain: Optional[str] = None
    public_domain_scheme: Optional[str] = None

    @property
    def scope(self) -> tuple[str, str]:
        """Return the ``(account_id, bucket)`` pair that namespaces cache rows."""
        return (self.account_id, self.bucket)

    @property
    def registry_key(self) -> str:
        """Return the ``provider:account:bucket`` key used to look up transfer configs."""
        return f"{self.provider}:{self.account_id}:{self.bucket}"  # type: ignore[attr-defined]

    def with_bucket(self, bucket: str):
        """Return a copy of this configuration addressing another bucket."""
        return self.model_copy(update={"bucket": bucket})

    def _has_keys(self) -> bool:
        return bool(self.access_key_id) and bool(self.secret_access_key)


class R2Config(_StorageConfigBase):
    """Cloudflare R2 configuration."""

    provider: Literal["r2"] = "r2"
    api_token: Optional[str] = None

    def validate_credentials(self) -> None:
        """Raise ``CredentialError`` when the configuration cannot authenticate."""
        if not self._has_keys():
            raise CredentialError("Missing R2 access key or secret key")


class AwsConfig(_StorageConfigBase):
    """AWS S3 configuration."""

    provider: Literal["aws"] = "aws"
    region: str = ""
    endpoint_scheme: str = "https"
    endpoint_host: Optional[str] = None
    force_path_style: bool = False

    def validate_credentials(self) -> None:
        """Raise ``CredentialError`` when the configuration cannot authenticate."""
        if not self.region.strip():
            raise CredentialError("AWS region is required")
        if not self._has_keys():
            raise CredentialError("Missing AWS credentials or region")


class _EndpointConfig(_StorageConfigBase):
    """Self-hosted S3-compatible endpoint configuration."""

    region: str = "us-east-1"
    endpoint_scheme: str = "https"
    endpoint_host: str = ""
    force_path_style: bool = True

    label: ClassVar[str] = "S3"

    def validate_credentials(self) -> None:
        """Raise ``CredentialError`` when the configuration cannot authenticate."""
        if not self.endpoint_host.strip():
            raise CredentialError(f"{self.label} endpoint host is required")
        if not self._has_keys():
            raise CredentialError(f"Missing {self.label} access key or secret key")


class MinioConfig(_EndpointConfig):
    """MinIO configuration."""

    provider: Literal["minio"] = "minio"
    label: ClassVar[str] = "MinIO"


class RustfsConfig(_EndpointConfig):
    """RustFS configuration."""

    provider: Literal["rustfs"] = "rustfs"
    label: ClassVar[str] = "RustFS"


StorageConfig = Annotated[
    Union[R2Config, AwsConfig, MinioConfig, RustfsConfig],
    Field(discriminator="provider"),
]

_STORAGE_CONFIG_ADAPTER: TypeAdapter[StorageConfig] = TypeAdapter(StorageConfig)


def parse_storage_config(data: object) -> StorageConfig:
    """Validate raw mapping data into the matching provider configuration.

    Args:
        data: Mapping (or model) carrying a ``provider`` tag.

    Returns:
        StorageConfig: Provider-specific configuration instance.
    """
    return _STORAGE_CONFIG_ADAPTER.validate_python(data)


class Bucket(ProviderModel):
    """Bucket summary returned by ``list_buckets``."""

    name: str
    creation_date: Optional[datetime] = None


class StorageObject(ProviderModel):
    """Object metadata as reported by the provider.

    Attributes:
        key: Full object key, ``/`` separated and without a leading slash.
        size: Object size in bytes.
        last_modified: Last modification timestamp as an ISO-8601 string.
        etag: Entity tag without surrounding quotes.
    """

    key: str
    size: int = Field(default=0, ge=0)
    last_modified: str = ""
    etag: str = ""


class ListPage(ProviderModel):
    """One page of a (possibly delimited) object listing."""

    objects: list[StorageObject] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)
    truncated: bool = False
    continuation_token: Optional[str] = None


class MoveOperation(ProviderModel):
    """A single key relocation inside one bucket."""

    old_key: str
    new_key: str


class BatchDeleteResult(ProviderModel):
    """Accounting for a batch delete; ``deleted + failed`` equals the request size."""

    deleted: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    deleted_keys: list[str] = Field(default_factory=list)


class BatchMoveResult(ProviderModel):
    """Accounting for a batch move; ``moved + failed`` equals the request size."""

    moved: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    moved_operations: list[MoveOperation] = Field(default_factory=list)


class UploadedPart(ProviderModel):
    """A multipart upload part acknowledged by the provider."""

    part_number: int
    etag: str


class SyncResult(ProviderModel):
    """Outcome of a completed bucket sync."""

    count: int
    completed_at: int


__all__ = [
    "ProviderName",
    "R2Config",
    "AwsConfig",
    "MinioConfig",
    "RustfsConfig",
    "StorageConfig",
    "parse_storage_config",
    "Bucket",
    "StorageObject",
    "ListPage",
    "MoveOperation",
    "BatchDeleteResult",
    "BatchMoveResult",
    "UploadedPart",
    "SyncResult",
]
