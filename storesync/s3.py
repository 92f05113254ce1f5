"""S3-compatible object store backend implementation of Filesystem.

Objects are addressed by joining escaped location segments with ``/``.
Reads go through a local read-through cache: the first ``open`` downloads
the object into the temp directory and later opens within the expiry window
reuse that copy. Writes record the caller's modification time in user
metadata so the cheap checksum survives a round trip.

Example:

    >>> from storesync import S3Filesystem
    >>> backend = S3Filesystem(
    ...     {
    ...         "bucket": "backups",
    ...         "endpoint_url": "https://minio.internal:9000",
    ...         "access_key": "minio",
    ...         "secret_key": "minio123",
    ...         "cache_expiry": 600,
    ...     },
    ... )

"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import mimetypes
import os
import tempfile
import threading
import time
from typing import TYPE_CHECKING, Any, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .checksums import checksum_cheap, checksum_content, is_office_like
from .interfaces import (
    DEFAULT_CHUNK_SIZE,
    BackendIOError,
    Entry,
    FileBackendError,
    Filesystem,
    Location,
    NotFoundError,
)
from .path_utils import key_to_location, location_to_key, validate_location
from .temp import reader_to_temp_file
from .utils import (
    SNIFF_SIZE,
    copy_context,
    parse_timestamp,
    sniff_content_type,
    to_utc,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from datetime import datetime

    from .context import Context
else:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

MTIME_METADATA_KEY = "mtime"
CUSTOM_MTIME_METADATA_KEY = "custom-mtime"
DEFAULT_CACHE_EXPIRY = 300.0
DELETE_BATCH_SIZE = 1000

_NOT_FOUND_CODES = frozenset(("404", "NoSuchKey", "NotFound"))


def format_metadata_time(mod_time: datetime) -> str:
    """Render a modification time for object user metadata."""
    return to_utc(mod_time).replace(microsecond=0).isoformat()


def effective_mod_time(head: Mapping[str, Any]) -> datetime:
    """Return the modification time recorded for an object.

    User metadata written by :meth:`S3Filesystem.write_file` wins over the
    store-assigned ``LastModified`` value.
    """
    metadata = head.get("Metadata") or {}
    for key in (MTIME_METADATA_KEY, CUSTOM_MTIME_METADATA_KEY):
        parsed = parse_timestamp(metadata.get(key))
        if parsed is not None:
            return parsed
    return to_utc(head["LastModified"])


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _translate_error(
    exc: Exception,
    location: Location,
    message: str,
) -> FileBackendError:
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _NOT_FOUND_CODES:
            return NotFoundError(location)
        return BackendIOError(f"{message} ({code})", location=location)
    return BackendIOError(message, location=location)


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not remove cached file %s: %s", path, exc)


class _CacheJanitor:
    """Deletes cached files once their expiry passes, from one daemon thread."""

    def __init__(self) -> None:
        self._due: dict[str, float] = {}
        self._condition = threading.Condition()
        self._thread: threading.Thread | None = None

    def schedule(self, path: str, delay: float) -> None:
        with self._condition:
            self._due[path] = time.monotonic() + delay
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run,
                    name="storesync-s3-cache",
                    daemon=True,
                )
                self._thread.start()
            self._condition.notify()

    def discard(self, path: str) -> None:
        with self._condition:
            self._due.pop(path, None)
        _remove_quietly(path)

    def pending(self) -> int:
        with self._condition:
            return len(self._due)

    def _run(self) -> None:
        while True:
            with self._condition:
                if not self._due:
                    self._thread = None
                    return
                path, due = min(self._due.items(), key=lambda item: item[1])
                delay = due - time.monotonic()
                if delay > 0:
                    self._condition.wait(delay)
                    continue
                del self._due[path]
            logger.debug("Expiring cached object %s", path)
            _remove_quietly(path)


class S3Filesystem(Filesystem):
    """Backend implementation backed by one S3-compatible bucket."""

    def __init__(
        self,
        connection_info: Mapping[str, Any],
        *,
        client: Any | None = None,
    ) -> None:
        """Initialise the backend using S3 connection parameters.

        Args:
            connection_info: Mapping with ``bucket`` and optional
                ``endpoint_url``, ``access_key``, ``secret_key``, ``region``,
                ``cache_expiry`` (seconds) and ``cache_dir``.
            client: Pre-built boto3 S3 client, mainly for tests.

        """
        if not isinstance(connection_info, Mapping):
            message = "connection_info must be a mapping"
            raise TypeError(message)
        if not connection_info.get("bucket"):
            message = "Missing 'bucket' in connection_info"
            raise ValueError(message)

        self._bucket = str(connection_info["bucket"])
        self._cache_expiry = float(
            connection_info.get("cache_expiry", DEFAULT_CACHE_EXPIRY),
        )
        self._cache_dir = str(connection_info.get("cache_dir") or tempfile.gettempdir())
        self._janitor = _CacheJanitor()

        if client is not None:
            self._client = client
        else:
            self._client = boto3.client(
                "s3",
                endpoint_url=connection_info.get("endpoint_url"),
                aws_access_key_id=connection_info.get("access_key"),
                aws_secret_access_key=connection_info.get("secret_key"),
                region_name=connection_info.get("region"),
                config=Config(retries={"max_attempts": 5, "mode": "standard"}),
            )

    @property
    def bucket(self) -> str:
        """Return the bucket name."""
        return self._bucket

    def cache_path(self, location: Location) -> str:
        """Return the local cache file used for ``location``."""
        key = location_to_key(location)
        digest = hashlib.sha256(f"{self._bucket}/{key}".encode()).hexdigest()
        return os.path.join(self._cache_dir, digest)

    def _head(self, location: Location, **extra: Any) -> dict[str, Any]:
        key = location_to_key(location)
        try:
            return self._client.head_object(Bucket=self._bucket, Key=key, **extra)
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, location, "Failed to stat object") from exc

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        """Return a checksum from the recorded mtime and the object size."""
        head = self._head(location)
        return checksum_cheap(effective_mod_time(head), int(head.get("ContentLength", 0)))

    def checksum_content(self, ctx: Context, location: Location) -> str:
        """Return the stored SHA-256, or hash the downloaded object."""
        head = self._head(location, ChecksumMode="ENABLED")
        stored = head.get("ChecksumSHA256")
        if stored and "-" not in stored and not is_office_like(head.get("ContentType")):
            try:
                return base64.b64decode(stored, validate=True).hex()
            except (binascii.Error, ValueError):
                logger.debug("Ignoring malformed stored checksum for %s", location)
        with self.open(ctx, location) as handle:
            return checksum_content(ctx, handle)

    def files(self, ctx: Context) -> Iterator[Entry]:
        """Yield every object in the bucket with its recorded mtime."""
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self._bucket):
                for summary in page.get("Contents", []):
                    if ctx.done():
                        return
                    key = summary["Key"]
                    if key.endswith("/"):
                        continue
                    location = key_to_location(key)
                    if not location:
                        continue
                    try:
                        head = self._client.head_object(Bucket=self._bucket, Key=key)
                    except ClientError as exc:
                        logger.debug("Skipping %s: %s", key, exc)
                        continue
                    except BotoCoreError as exc:
                        logger.warning("Skipping %s: %s", key, exc)
                        continue
                    yield Entry(location=location, mod_time=effective_mod_time(head))
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Listing bucket %s failed: %s", self._bucket, exc)

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        """Open an object through the local read-through cache."""
        location = validate_location(location)
        ctx.raise_if_done()
        cache_path = self.cache_path(location)
        try:
            cached = open(cache_path, "rb")  # noqa: SIM115
        except FileNotFoundError:
            cached = None
        if cached is not None:
            logger.debug("Cache hit for %s", cache_path)
            self._janitor.schedule(cache_path, self._cache_expiry)
            return cached
        return self._download(ctx, location, cache_path)

    def _download(self, ctx: Context, location: Location, cache_path: str) -> BinaryIO:
        key = location_to_key(location)
        handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
            mode="w+b",
            dir=self._cache_dir,
            prefix=".storesync-",
            delete=False,
        )
        try:
            try:
                response = self._client.get_object(Bucket=self._bucket, Key=key)
            except (ClientError, BotoCoreError) as exc:
                raise _translate_error(exc, location, "Failed to get object") from exc
            body = response["Body"]
            try:
                copy_context(ctx, body, handle)
            finally:
                body.close()
            handle.flush()
            os.replace(handle.name, cache_path)
            handle.seek(0)
        except BaseException:
            handle.close()
            _remove_quietly(handle.name)
            raise
        logger.debug("Cached %s at %s", key, cache_path)
        self._janitor.schedule(cache_path, self._cache_expiry)
        return handle

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Upload ``source`` with its content type, checksum and mtime."""
        location = validate_location(location)
        key = location_to_key(location)
        ctx.raise_if_done()
        body = reader_to_temp_file(ctx, source)
        try:
            start = body.tell()
            head = body.read(SNIFF_SIZE)
            body.seek(start)
            digest = self._sha256(ctx, body)
            body.seek(start)
            stamp = format_metadata_time(mod_time)
            try:
                self._client.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=self._content_type(key, head),
                    ChecksumSHA256=base64.b64encode(digest).decode("ascii"),
                    Metadata={
                        MTIME_METADATA_KEY: stamp,
                        CUSTOM_MTIME_METADATA_KEY: stamp,
                    },
                )
            except (ClientError, BotoCoreError) as exc:
                raise _translate_error(exc, location, "Failed to put object") from exc
        finally:
            if body is not source:
                body.close()
        self._janitor.discard(self.cache_path(location))
        return location

    @staticmethod
    def _sha256(ctx: Context, body: BinaryIO) -> bytes:
        hasher = hashlib.sha256()
        while True:
            ctx.raise_if_done()
            chunk = body.read(DEFAULT_CHUNK_SIZE)
            if not chunk:
                return hasher.digest()
            hasher.update(chunk)

    @staticmethod
    def _content_type(key: str, head: bytes) -> str:
        sniffed = sniff_content_type(head)
        guessed, _ = mimetypes.guess_type(key)
        if guessed and sniffed in (None, "application/zip"):
            return guessed
        return sniffed or guessed or "application/octet-stream"

    def remove_all(self, ctx: Context, location: Location) -> None:
        """Delete the object and every object below ``location``."""
        location = validate_location(location)
        key = location_to_key(location)
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
            self._janitor.discard(self.cache_path(location))
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=f"{key}/"):
                keys = [summary["Key"] for summary in page.get("Contents", [])]
                for start in range(0, len(keys), DELETE_BATCH_SIZE):
                    ctx.raise_if_done()
                    batch = keys[start : start + DELETE_BATCH_SIZE]
                    self._client.delete_objects(
                        Bucket=self._bucket,
                        Delete={"Objects": [{"Key": item} for item in batch]},
                    )
                    for item in batch:
                        self._janitor.discard(self.cache_path(key_to_location(item)))
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, location, "Failed to remove") from exc

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        """Copy the object to ``new`` and delete the original."""
        old = validate_location(old)
        new = validate_location(new)
        old_key = location_to_key(old)
        try:
            self._client.copy_object(
                Bucket=self._bucket,
                Key=location_to_key(new),
                CopySource={"Bucket": self._bucket, "Key": old_key},
                MetadataDirective="COPY",
            )
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, old, "Failed to copy object") from exc
        try:
            self._client.delete_object(Bucket=self._bucket, Key=old_key)
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, old, "Failed to remove old object") from exc
        self._janitor.discard(self.cache_path(old))
        self._janitor.discard(self.cache_path(new))
        return new
