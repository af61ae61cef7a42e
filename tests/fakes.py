"""In-memory S3-like backend used across the test suite."""

from __future__ import annotations

import io
import threading
import time
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, BinaryIO, Optional, Sequence

from bucketdock.providers import (
    Bucket,
    ListPage,
    ObjectNotFoundError,
    ProviderError,
    StorageAdapter,
    StorageConfig,
    StorageObject,
    UploadedPart,
    parse_storage_config,
)


def make_config(
    provider: str = "minio", *, bucket: str = "photos", account_id: str = "local", **extra: Any
) -> StorageConfig:
    data: dict[str, Any] = {
        "provider": provider,
        "account_id": account_id,
        "bucket": bucket,
        "access_key_id": "key",
        "secret_access_key": "secret",
    }
    if provider in ("minio", "rustfs"):
        data["endpoint_host"] = "localhost:9000"
    if provider == "aws":
        data["region"] = "us-east-1"
    data.update(extra)
    return parse_storage_config(data)


class FakeStorage:
    """Objects and multipart uploads shared by every adapter it creates.

    ``fail(op, key)`` queues an error for the next matching call; ``delay``
    slows down reads and writes so concurrency can be observed.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.objects: dict[tuple[str, str], dict[str, tuple[bytes, str]]] = defaultdict(dict)
        self.uploads: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.delay = 0.0
        self._failures: dict[tuple[str, Optional[str]], list[Exception]] = defaultdict(list)

    def adapter(self, config: StorageConfig) -> "FakeAdapter":
        return FakeAdapter(config, self)

    def put(self, config: StorageConfig, key: str, data: bytes) -> None:
        with self.lock:
            self.objects[config.scope][key] = (data, _now())

    def get(self, config: StorageConfig, key: str) -> Optional[bytes]:
        with self.lock:
            entry = self.objects[config.scope].get(key)
        return entry[0] if entry else None

    def keys(self, config: StorageConfig) -> list[str]:
        with self.lock:
            return sorted(self.objects[config.scope])

    def fail(self, op: str, key: Optional[str] = None, *, times: int = 1, error: Optional[Exception] = None) -> None:
        with self.lock:
            for _ in range(times):
                self._failures[(op, key)].append(error or ProviderError(f"{op} failed"))

    def count(self, op: str) -> int:
        with self.lock:
            return sum(1 for name, _ in self.calls if name == op)

    def check(self, op: str, key: str = "") -> None:
        with self.lock:
            self.calls.append((op, key))
            for target in ((op, key), (op, None)):
                queued = self._failures.get(target)
                if queued:
                    raise queued.pop(0)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class FakeAdapter(StorageAdapter):
    def __init__(self, config: StorageConfig, storage: FakeStorage) -> None:
        super().__init__(config)
        self.storage = storage

    @property
    def _bucket(self) -> dict[str, tuple[bytes, str]]:
        return self.storage.objects[self._config.scope]

    def list_buckets(self) -> list[Bucket]:
        self.storage.check("list_buckets")
        with self.storage.lock:
            names = sorted(
                bucket for account, bucket in self.storage.objects if account == self._config.account_id
            )
        return [Bucket(name=name) for name in names]

    def list_objects(
        self,
        *,
        prefix: str = "",
        delimiter: str = "/",
        cursor: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ListPage:
        self.storage.check("list_objects", prefix)
        with self.storage.lock:
            keys = sorted(key for key in self._bucket if key.startswith(prefix))
            entries = dict(self._bucket)
        folders: list[str] = []
        if delimiter:
            direct = []
            for key in keys:
                rest = key[len(prefix) :]
                if delimiter in rest:
                    folder = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if folder not in folders:
                        folders.append(folder)
                else:
                    direct.append(key)
            keys = direct
        start = int(cursor or 0)
        window = keys[start : start + max_keys]
        truncated = start + max_keys < len(keys)
        return ListPage(
            objects=[
                StorageObject(key=key, size=len(entries[key][0]), last_modified=entries[key][1], etag="e")
                for key in window
            ],
            folders=folders,
            truncated=truncated,
            continuation_token=str(start + max_keys) if truncated else None,
        )

    def head_object(self, key: str) -> Optional[StorageObject]:
        self.storage.check("head_object", key)
        with self.storage.lock:
            entry = self._bucket.get(key)
        if entry is None:
            return None
        return StorageObject(key=key, size=len(entry[0]), last_modified=entry[1])

    def open_object(self, key: str, byte_range: Optional[tuple[int, int]] = None) -> BinaryIO:
        self.storage.check("open_object", key)
        if self.storage.delay:
            time.sleep(self.storage.delay)
        with self.storage.lock:
            entry = self._bucket.get(key)
        if entry is None:
            raise ObjectNotFoundError(f"GetObject failed: NoSuchKey - {key}")
        data = entry[0]
        if byte_range is not None:
            data = data[byte_range[0] : byte_range[1] + 1]
        return io.BytesIO(data)

    def put_object(self, key: str, body: bytes | BinaryIO, *, content_type: Optional[str] = None) -> str:
        self.storage.check("put_object", key)
        if self.storage.delay:
            time.sleep(self.storage.delay)
        data = body if isinstance(body, bytes) else body.read()
        with self.storage.lock:
            self._bucket[key] = (data, _now())
        return f"etag-{len(data)}"

    def copy_object(self, source: StorageConfig, source_key: str, dest_key: str) -> None:
        self.storage.check("copy_object", source_key)
        with self.storage.lock:
            entry = self.storage.objects[source.scope].get(source_key)
            if entry is None:
                raise ObjectNotFoundError(f"CopyObject failed: NoSuchKey - {source_key}")
            self._bucket[dest_key] = (entry[0], _now())

    def delete_object(self, key: str) -> None:
        self.storage.check("delete_object", key)
        with self.storage.lock:
            self._bucket.pop(key, None)

    def delete_objects(self, keys: Sequence[str]) -> tuple[list[str], list[str]]:
        self.storage.check("delete_objects")
        deleted: list[str] = []
        errors: list[str] = []
        for key in keys:
            try:
                self.storage.check("delete_objects:key", key)
            except ProviderError as exc:
                errors.append(f"{key}: {exc}")
                continue
            with self.storage.lock:
                self._bucket.pop(key, None)
            deleted.append(key)
        return deleted, errors

    def generate_signed_url(self, key: str, expires_in: int = 3600) -> str:
        return f"https://signed.example/{self._config.bucket}/{key}?expires={expires_in}"

    def create_multipart_upload(self, key: str, *, content_type: Optional[str] = None) -> str:
        self.storage.check("create_multipart_upload", key)
        upload_id = uuid.uuid4().hex
        with self.storage.lock:
            self.storage.uploads[upload_id] = {"scope": self._config.scope, "key": key, "parts": {}}
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        self.storage.check("upload_part", f"{key}#{part_number}")
        if self.storage.delay:
            time.sleep(self.storage.delay)
        with self.storage.lock:
            upload = self.storage.uploads.get(upload_id)
            if upload is None:
                raise ObjectNotFoundError(f"UploadPart failed: NoSuchUpload - {upload_id}")
            upload["parts"][part_number] = data
        return f"etag-{part_number}"

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Sequence[UploadedPart]) -> None:
        self.storage.check("complete_multipart_upload", key)
        with self.storage.lock:
            upload = self.storage.uploads.pop(upload_id, None)
            if upload is None:
                raise ObjectNotFoundError(f"CompleteMultipartUpload failed: NoSuchUpload - {upload_id}")
            numbers = sorted(part.part_number for part in parts)
            if numbers != sorted(upload["parts"]):
                raise ProviderError("CompleteMultipartUpload failed: InvalidPart")
            data = b"".join(upload["parts"][number] for number in numbers)
            self.storage.objects[upload["scope"]][key] = (data, _now())

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self.storage.check("abort_multipart_upload", key)
        with self.storage.lock:
            self.storage.uploads.pop(upload_id, None)

    def list_parts(self, key: str, upload_id: str) -> list[UploadedPart]:
        self.storage.check("list_parts", key)
        with self.storage.lock:
            upload = self.storage.uploads.get(upload_id)
            if upload is None:
                raise ObjectNotFoundError(f"ListParts failed: NoSuchUpload - {upload_id}")
            return [UploadedPart(part_number=n, etag=f"etag-{n}") for n in sorted(upload["parts"])]
