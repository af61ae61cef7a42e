"""boto3-backed adapters for S3-compatible providers."""

from __future__ import annotations

import logging
import threading
from typing import Any, BinaryIO, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .base import LIST_PAGE_SIZE, StorageAdapter
from .errors import ObjectNotFoundError, ProviderError
from .models import (
    Bucket,
    ListPage,
    StorageConfig,
    StorageObject,
    UploadedPart,
)
from .urls import endpoint_url

LOGGER = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NoSuchUpload", "NotFound", "NoSuchBucket"}


def _strip_etag(value: Optional[str]) -> str:
    return (value or "").strip('"')


def _isoformat(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat().replace("+00:00", "Z")
    return str(value)


def _translate(exc: Exception, action: str) -> ProviderError:
    """Map botocore failures onto the provider error hierarchy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        message = error.get("Message", str(exc))
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(f"{action} failed: {code} - {message}")
        return ProviderError(f"{action} failed: {code} - {message}")
    return ProviderError(f"{action} failed: {exc}")


class S3CompatibleAdapter(StorageAdapter):
    """Adapter speaking the S3 API through a boto3 client."""

    def __init__(self, config: StorageConfig) -> None:
        super().__init__(config)
        self._client_lock = threading.Lock()
        self._client: Any = None

    def client_kwargs(self) -> dict[str, Any]:
        """Return keyword arguments for ``boto3.client('s3', ...)``."""
        config = self._config
        addressing = "path" if getattr(config, "force_path_style", False) else "virtual"
        kwargs: dict[str, Any] = {
            "aws_access_key_id": config.access_key_id,
            "aws_secret_access_key": config.secret_access_key,
            "region_name": self._region(),
            "config": Config(
                retries={"max_attempts": 3, "mode": "standard"},
                s3={"addressing_style": addressing},
                signature_version="s3v4",
            ),
        }
        endpoint = endpoint_url(config)
        if endpoint is not None:
            kwargs["endpoint_url"] = endpoint
        return kwargs

    def _region(self) -> str:
        return getattr(self._config, "region", "") or "us-east-1"

    @property
    def client(self) -> Any:
        """Return the lazily created boto3 S3 client."""
        with self._client_lock:
            if self._client is None:
                LOGGER.debug(
                    "Creating %s client for %s/%s",
                    self.provider,
                    self._config.account_id,
                    self._config.bucket,
                )
                self._client = boto3.client("s3", **self.client_kwargs())
            return self._client

    @property
    def _bucket(self) -> str:
        return self._config.bucket

    # ------------------------------------------------------------------ #
    # Primitives                                                         #
    # ------------------------------------------------------------------ #

    def list_buckets(self) -> list[Bucket]:
        try:
            response = self.client.list_buckets()
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "ListBuckets") from exc
        return [
            Bucket(name=item["Name"], creation_date=item.get("CreationDate"))
            for item in response.get("Buckets", [])
        ]

    def list_objects(
        self,
        *,
        prefix: str = "",
        delimiter: str = "/",
        cursor: Optional[str] = None,
        max_keys: int = LIST_PAGE_SIZE,
    ) -> ListPage:
        params: dict[str, Any] = {"Bucket": self._bucket, "MaxKeys": max_keys}
        if prefix:
            params["Prefix"] = prefix
        if delimiter:
            params["Delimiter"] = delimiter
        if cursor:
            params["ContinuationToken"] = cursor
        try:
            response = self.client.list_objects_v2(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "ListObjectsV2") from exc

        objects = [
            StorageObject(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                last_modified=_isoformat(item.get("LastModified")),
                etag=_strip_etag(item.get("ETag")),
            )
            for item in response.get("Contents", [])
            # Zero-byte folder markers are folders, not files.
            if not (item["Key"].endswith("/") and int(item.get("Size", 0)) == 0)
        ]
        folders = [entry["Prefix"] for entry in response.get("CommonPrefixes", [])]
        return ListPage(
            objects=objects,
            folders=folders,
            truncated=bool(response.get("IsTruncated", False)),
            continuation_token=response.get("NextContinuationToken"),
        )

    def head_object(self, key: str) -> Optional[StorageObject]:
        try:
            response = self.client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            translated = _translate(exc, "HeadObject")
            if isinstance(translated, ObjectNotFoundError):
                return None
            raise translated from exc
        except BotoCoreError as exc:
            raise _translate(exc, "HeadObject") from exc
        return StorageObject(
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=_isoformat(response.get("LastModified")),
            etag=_strip_etag(response.get("ETag")),
        )

    def open_object(self, key: str, byte_range: Optional[tuple[int, int]] = None) -> BinaryIO:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        try:
            response = self.client.get_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "GetObject") from exc
        return response["Body"]

    def put_object(self, key: str, body: bytes | BinaryIO, *, content_type: Optional[str] = None) -> str:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            response = self.client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "PutObject") from exc
        return _strip_etag(response.get("ETag"))

    def copy_object(self, source: StorageConfig, source_key: str, dest_key: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self._bucket,
                Key=dest_key,
                CopySource={"Bucket": source.bucket, "Key": source_key},
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "CopyObject") from exc

    def delete_object(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "DeleteObject") from exc

    def delete_objects(self, keys: Sequence[str]) -> tuple[list[str], list[str]]:
        if not keys:
            return [], []
        try:
            response = self.client.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "DeleteObjects") from exc
        deleted = [item["Key"] for item in response.get("Deleted", [])]
        errors = [
            f"{item.get('Key', '?')}: {item.get('Code', 'Error')} - {item.get('Message', '')}"
            for item in response.get("Errors", [])
        ]
        return deleted, errors

    def generate_signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "GeneratePresignedUrl") from exc

    def create_multipart_upload(self, key: str, *, content_type: Optional[str] = None) -> str:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        try:
            response = self.client.create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "CreateMultipartUpload") from exc
        return response["UploadId"]

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        try:
            response = self.client.upload_part(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, f"UploadPart {part_number}") from exc
        return _strip_etag(response.get("ETag"))

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[UploadedPart]
    ) -> None:
        ordered = sorted(parts, key=lambda part: part.part_number)
        try:
            self.client.complete_multipart_upload(
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": part.part_number, "ETag": f'"{part.etag}"'}
                        for part in ordered
                    ]
                },
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "CompleteMultipartUpload") from exc

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self._bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, "AbortMultipartUpload") from exc

    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        parts: list[UploadedPart] = []
        marker: Optional[int] = None
        while True:
            params: dict[str, Any] = {"Bucket": self._bucket, "Key": key, "UploadId": upload_id}
            if marker is not None:
                params["PartNumberMarker"] = marker
            try:
                response = self.client.list_parts(**params)
            except (ClientError, BotoCoreError) as exc:
                raise _translate(exc, "ListParts") from exc
            for item in response.get("Parts", []):
                parts.append(
                    UploadedPart(part_number=int(item["PartNumber"]), etag=_strip_etag(item.get("ETag")))
                )
            if not response.get("IsTruncated"):
                return parts
            marker = int(response.get("NextPartNumberMarker", 0))


class R2Adapter(S3CompatibleAdapter):
    """Cloudflare R2 adapter; always region ``auto`` and virtual-hosted addressing."""

    def _region(self) -> str:
        return "auto"


class AwsAdapter(S3CompatibleAdapter):
    """AWS S3 adapter."""


class MinioAdapter(S3CompatibleAdapter):
    """MinIO adapter."""


class RustfsAdapter(S3CompatibleAdapter):
    """RustFS adapter."""


ADAPTERS: dict[str, type[S3CompatibleAdapter]] = {
    "r2": R2Adapter,
    "aws": AwsAdapter,
    "minio": MinioAdapter,
    "rustfs": RustfsAdapter,
}


__all__ = [
    "S3CompatibleAdapter",
    "R2Adapter",
    "AwsAdapter",
    "MinioAdapter",
    "RustfsAdapter",
    "ADAPTERS",
]
