"""Blob storage backends for bundle and asset bytes.

Keys are content-addressed and written once, so neither backend needs
locking. The backend is picked from settings at startup by ``build_storage``
and handed to services explicitly.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.errors import StorageWriteFailed

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class BlobNotFound(Exception):
    """Raised when a key has no stored bytes."""


@dataclass(frozen=True)
class StorageLocation:
    storage_type: str
    key: str
    size: int


class BlobStorage(Protocol):
    kind: str

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> StorageLocation: ...
    def exists(self, key: str) -> bool: ...
    def open_stream(self, key: str) -> Iterator[bytes]: ...
    def delete(self, key: str) -> None: ...


class LocalStorage:
    kind = "local"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        # Resolved path must stay within the storage root
        if path == self.root or not str(path).startswith(str(self.root) + os.sep):
            raise ValueError(f"Storage key escapes storage root: {key!r}")
        return path

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> StorageLocation:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.remove(tmp_name)
                raise
        except OSError as exc:
            raise StorageWriteFailed(f"Failed to store {key}", details={"key": key}) from exc
        return StorageLocation(self.kind, key, len(data))

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def open_stream(self, key: str) -> Iterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise BlobNotFound(key)
        return self._iter_file(path)

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        with open(path, "rb") as fh:
            while chunk := fh.read(_CHUNK_SIZE):
                yield chunk

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            os.remove(path)


class S3Storage:
    kind = "s3"

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str = "auto",
        access_key: str | None = None,
        secret_key: str | None = None,
        client=None,
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4"),
        )

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> StorageLocation:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            raise StorageWriteFailed(f"Failed to store {key}", details={"key": key}) from exc
        return StorageLocation(self.kind, key, len(data))

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _S3_MISSING_CODES:
                return False
            raise
        return True

    def open_stream(self, key: str) -> Iterator[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _S3_MISSING_CODES:
                raise BlobNotFound(key) from exc
            raise
        return response["Body"].iter_chunks(chunk_size=_CHUNK_SIZE)

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_storage(settings) -> BlobStorage:
    if settings.storage_backend == "s3":
        logger.info("Using S3 blob storage in bucket %s", settings.s3_bucket)
        return S3Storage(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
        )
    logger.info("Using local blob storage at %s", settings.storage_path)
    return LocalStorage(settings.storage_path)
