"""Object storage for generated results, backed by MinIO/S3 or the local disk."""
from __future__ import annotations

import abc
import hashlib
import io
import mimetypes
import re
from functools import lru_cache
from pathlib import Path

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from .config import Settings, get_settings


class StorageError(RuntimeError):
    """Raised when an object cannot be written or read."""


class UnsafePathError(StorageError):
    """Raised when a key would resolve outside the storage root."""


_SAFE_SEGMENT = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9._-]*")


def sanitize_segment(value: str) -> str:
    """Reduce a store identifier to characters safe for object keys.

    Identifiers that are already safe pass through unchanged. Anything else is
    rewritten and suffixed with a digest of the original, so two stores never
    share a prefix.
    """

    if _SAFE_SEGMENT.fullmatch(value) and ".." not in value:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    cleaned = re.sub(r"[^a-zA-Z0-9-]", "-", value).strip("-") or "store"
    return f"{cleaned}-{digest}"


def result_key(store: str, request_id: str, extension: str = "jpg") -> str:
    return f"{sanitize_segment(store)}/results/{request_id}.{extension}"


def guess_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or "application/octet-stream"


class ObjectStorage(abc.ABC):
    @abc.abstractmethod
    def put(self, payload: bytes, key: str, content_type: str = "image/jpeg") -> str:
        """Store ``payload`` under ``key`` and return its public URL."""

    @abc.abstractmethod
    def get(self, key: str) -> bytes:
        """Return the stored bytes; raises ``FileNotFoundError`` when absent."""

    @abc.abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a single object; returns whether something was removed."""

    @abc.abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix`` and return the count."""


class LocalStorage(ObjectStorage):
    """Filesystem fallback used in development and by the uploads route."""

    def __init__(self, root: str | Path, public_base_url: str = "/uploads") -> None:
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def resolve(self, key: str) -> Path:
        candidate = (self.root / key.lstrip("/\\")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise UnsafePathError(f"Key escapes storage root: {key}")
        return candidate

    def put(self, payload: bytes, key: str, content_type: str = "image/jpeg") -> str:
        target = self.resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
        return f"{self.public_base_url}/{key}"

    def get(self, key: str) -> bytes:
        target = self.resolve(key)
        if not target.is_file():
            raise FileNotFoundError(key)
        return target.read_bytes()

    def delete(self, key: str) -> bool:
        target = self.resolve(key)
        if not target.is_file():
            return False
        target.unlink()
        return True

    def delete_prefix(self, prefix: str) -> int:
        base = self.resolve(prefix)
        if not base.exists():
            return 0
        removed = 0
        for path in sorted(base.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
                removed += 1
            elif path.is_dir():
                path.rmdir()
        if base.is_dir():
            base.rmdir()
        return removed


class MinioStorage(ObjectStorage):
    """S3-compatible storage; objects are addressed by ``s3://bucket/key`` URLs."""

    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket
        self._bucket_checked = False

    def ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_checked = True

    def put(self, payload: bytes, key: str, content_type: str = "image/jpeg") -> str:
        self.ensure_bucket()
        try:
            self.client.put_object(
                self.bucket,
                key,
                io.BytesIO(payload),
                len(payload),
                content_type=content_type,
            )
        except S3Error as exc:
            raise StorageError(f"Failed to store {key}: {exc}") from exc
        return f"s3://{self.bucket}/{key}"

    def get(self, key: str) -> bytes:
        self.ensure_bucket()
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in {"NoSuchKey", "NoSuchObject"}:
                raise FileNotFoundError(key) from exc
            raise StorageError(f"Failed to read {key}: {exc}") from exc
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, key: str) -> bool:
        self.ensure_bucket()
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in {"NoSuchKey", "NoSuchObject"}:
                return False
            raise StorageError(f"Failed to delete {key}: {exc}") from exc
        return True

    def delete_prefix(self, prefix: str) -> int:
        self.ensure_bucket()
        objects = [
            DeleteObject(item.object_name)
            for item in self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
        ]
        if not objects:
            return 0
        errors = list(self.client.remove_objects(self.bucket, objects))
        if errors:
            raise StorageError(f"Failed to delete {len(errors)} objects under {prefix}")
        return len(objects)


def build_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_backend.lower() == "minio":
        client = Minio(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        return MinioStorage(client, settings.minio_bucket)
    return LocalStorage(settings.local_storage_dir, settings.public_base_url)


@lru_cache()
def get_storage() -> ObjectStorage:
    """Return the configured storage backend, built once per process."""

    return build_storage(get_settings())
