"""Pure URL derivation for bucket and object addresses."""

from __future__ import annotations

from urllib.parse import quote

from .models import AwsConfig, MinioConfig, R2Config, RustfsConfig, StorageConfig


def _public_domain_base(config: StorageConfig) -> str | None:
    domain = (config.public_domain or "").strip().rstrip("/")
    if not domain:
        return None
    if "://" in domain:
        return domain
    scheme = (config.public_domain_scheme or "https").strip() or "https"
    return f"{scheme}://{domain}"


def endpoint_url(config: StorageConfig) -> str | None:
    """Return the S3 API endpoint for a configuration.

    AWS without a custom ``endpoint_host`` returns ``None`` so the SDK resolves
    the regional endpoint itself.
    """
    if isinstance(config, R2Config):
        return f"https://{config.account_id}.r2.cloudflarestorage.com"
    if isinstance(config, AwsConfig):
        if not config.endpoint_host:
            return None
        return f"{config.endpoint_scheme or 'https'}://{config.endpoint_host.strip('/')}"
    if isinstance(config, (MinioConfig, RustfsConfig)):
        return f"{config.endpoint_scheme or 'https'}://{config.endpoint_host.strip('/')}"
    raise TypeError(f"Unsupported storage config: {type(config).__name__}")


def build_bucket_base_url(config: StorageConfig) -> str:
    """Return the base URL objects of the bucket are served from.

    A configured public domain wins. Otherwise the provider-native URL is
    derived, virtual-hosted unless the configuration forces path-style.

    Args:
        config: Storage configuration addressing a bucket.

    Returns:
        str: Base URL without a trailing slash.
    """
    public = _public_domain_base(config)
    if public is not None:
        return public

    if isinstance(config, R2Config):
        return f"https://{config.bucket}.{config.account_id}.r2.cloudflarestorage.com"

    if isinstance(config, AwsConfig):
        scheme = config.endpoint_scheme or "https"
        host = (config.endpoint_host or f"s3.{config.region}.amazonaws.com").strip("/")
    else:
        scheme = config.endpoint_scheme or "https"
        host = config.endpoint_host.strip("/")

    if config.force_path_style:
        return f"{scheme}://{host}/{config.bucket}"
    return f"{scheme}://{config.bucket}.{host}"


def build_public_url(config: StorageConfig, key: str) -> str:
    """Return the public URL for ``key``; ``/`` separators are preserved."""
    return f"{build_bucket_base_url(config)}/{quote(key.lstrip('/'), safe='/')}"


__all__ = ["build_bucket_base_url", "build_public_url", "endpoint_url"]
