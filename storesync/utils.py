"""Shared utility functions for backend implementations.

Key utilities:
- Hasher factory for multiple algorithms
- Context-aware chunked stream copying
- Content-type sniffing from leading bytes
- Timestamp normalisation

Example usage:
    >>> from storesync.utils import copy_context
    >>> written = copy_context(ctx, source, destination)

"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, BinaryIO

from .interfaces import DEFAULT_CHUNK_SIZE, ChecksumAlgorithm

if TYPE_CHECKING:
    from .context import Context

_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x1f\x8b", "application/gzip"),
    (b"PK\x03\x04", "application/zip"),
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BZh", "application/x-bzip2"),
    (b"\xfd7zXZ\x00", "application/x-xz"),
)

SNIFF_SIZE = 512


def get_hasher(algorithm: ChecksumAlgorithm) -> Any:
    """Get a hasher instance for the specified algorithm.

    Args:
        algorithm: The checksum algorithm to use ('md5', 'sha256', 'sha512', 'blake3')

    Returns:
        A hasher instance with update() and hexdigest() methods

    Raises:
        ImportError: If blake3 is requested but not installed.
        ValueError: If algorithm is not supported.

    """
    if algorithm == "blake3":
        try:
            import blake3
        except ImportError as exc:
            message = "blake3 is not installed. Install it with: pip install blake3"
            raise ImportError(message) from exc
        return blake3.blake3()
    if algorithm in ("md5", "sha256", "sha512"):
        return hashlib.new(algorithm)
    message = f"Unsupported checksum algorithm: {algorithm}"
    raise ValueError(message)


def copy_context(
    ctx: Context,
    source: BinaryIO,
    destination: BinaryIO,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Copy ``source`` into ``destination`` chunk by chunk.

    The context is checked before every chunk so a cancelled transfer stops
    promptly instead of finishing one huge copy.

    Args:
        ctx: Cancellation context.
        source: Readable binary stream.
        destination: Writable binary stream.
        chunk_size: Bytes read per iteration.

    Returns:
        Number of bytes copied.

    Raises:
        ContextError: If the context is done before the copy finishes.

    """
    written = 0
    while True:
        ctx.raise_if_done()
        chunk = source.read(chunk_size)
        if not chunk:
            return written
        destination.write(chunk)
        written += len(chunk)


def sniff_content_type(head: bytes) -> str | None:
    """Return a MIME type recognised from the leading bytes, if any."""
    for signature, content_type in _SIGNATURES:
        if head.startswith(signature):
            return content_type
    return None


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_to_datetime(value: float) -> datetime:
    """Convert a POSIX timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=timezone.utc)


def as_bool(value: Any, *, default: bool = False) -> bool:
    """Interpret configuration values such as ``"true"`` or ``1`` as booleans."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as used by Google and S3 metadata."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
