from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

T = TypeVar("T")


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int
    content_type: str | None = None


def validate_key(key: str) -> str:
    """Receipt blob keys are relative POSIX paths without `..` segments."""
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class ObjectStorage:
    backend = "abstract"

    def put(
        self, *, key: str, body: bytes, content_type: str | None = None
    ) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._root / validate_key(key)

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        tmp = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Readers (the worker) never see a half-written receipt.
            tmp.write_bytes(body)
            os.replace(tmp, path)
        except OSError as e:
            log_exception(logger, "storage.put.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not store object: {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            content_type=content_type,
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), content_type=content_type)

    def get(self, *, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            log_event(logger, "storage.get.missing", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    def delete(self, *, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class S3ObjectStorage(ObjectStorage):
    backend = "s3"

    MAX_ATTEMPTS = 5
    _RETRYABLE_CODES = frozenset(
        {
            "RequestCanceled",
            "RequestTimeout",
            "Throttling",
            "ThrottlingException",
            "SlowDown",
            "InternalError",
            "ServiceUnavailable",
        }
    )
    _MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})

    def __init__(self) -> None:
        # S3-compatible providers may report the region as "auto".
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"

        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        self._client = session.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url or None,
            config=Config(
                retries={"max_attempts": 3, "mode": "adaptive"},
                connect_timeout=30,
                read_timeout=60,
            ),
        )
        self._bucket = settings.s3_bucket

    @staticmethod
    def _error_code(error: Exception) -> str | None:
        if isinstance(error, ClientError):
            return (error.response.get("Error") or {}).get("Code")
        return None

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            return self._error_code(error) in self._RETRYABLE_CODES
        return isinstance(error, BotoCoreError)

    def _with_retries(self, operation: str, key: str, call: Callable[[], T]) -> T:
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return call()
            except (ClientError, BotoCoreError) as e:
                if self._error_code(e) in self._MISSING_CODES:
                    raise StorageError(f"Object not found: {key}") from e
                if attempt < self.MAX_ATTEMPTS and self._is_retryable(e):
                    delay_s = min(3.0, 0.25 * (2 ** (attempt - 1)))
                    log_event(
                        logger,
                        f"storage.{operation}.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    f"storage.{operation}.failure",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                )
                raise StorageError(f"Storage {operation} failed: {key}") from e
        raise StorageError(f"Storage {operation} failed: {key}")  # pragma: no cover

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        self._with_retries(
            "put",
            validate_key(key),
            lambda: self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra),
        )
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            content_type=content_type,
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), content_type=content_type)

    def get(self, *, key: str) -> bytes:
        resp = self._with_retries(
            "get",
            validate_key(key),
            lambda: self._client.get_object(Bucket=self._bucket, Key=key),
        )
        return resp["Body"].read()

    def delete(self, *, key: str) -> None:
        self._with_retries(
            "delete",
            validate_key(key),
            lambda: self._client.delete_object(Bucket=self._bucket, Key=key),
        )


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is None:
        if settings.storage_backend == "s3":
            _storage = S3ObjectStorage()
        else:
            root = settings.local_storage_path
            _storage = LocalObjectStorage(root if root.is_absolute() else Path.cwd() / root)
    return _storage
