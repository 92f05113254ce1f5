"""Checksum strategies for change detection.

Two strategies are provided:

- :func:`checksum_cheap` formats a modification time and a size. It never
  touches content and is used as the fast "did it change" pre-check.
- :func:`checksum_content` hashes file bytes. Office containers (OOXML and
  ODF) are re-exported with different zip metadata even when nothing
  meaningful changed, so for those only the semantic members are hashed,
  in sorted order, which keeps the digest stable across re-exports.

Example:
    >>> from datetime import datetime, timezone
    >>> checksum_cheap(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc), 10)
    '2024-01-02T03:04:05+00:00-10'

"""

from __future__ import annotations

import io
import zipfile
from typing import TYPE_CHECKING, BinaryIO

from .context import background
from .interfaces import DEFAULT_CHUNK_SIZE, ChecksumAlgorithm
from .temp import reader_to_temp_file
from .utils import get_hasher, to_utc

if TYPE_CHECKING:
    from datetime import datetime

    from .context import Context

GOOGLE_MIME_TYPES = (
    "application/vnd.google-apps.document",
    "application/vnd.google-apps.spreadsheet",
    "application/vnd.google-apps.presentation",
    "application/vnd.google-apps.drawing",
    "application/vnd.google-apps.form",
    "application/vnd.google-apps.jam",
    "application/vnd.google-apps.script",
    "application/vnd.google-apps.site",
)

OFFICE_MIME_TYPES = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.template",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.template",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.openxmlformats-officedocument.presentationml.template",
    "application/vnd.openxmlformats-officedocument.presentationml.slideshow",
    "application/vnd.ms-word.document.macroEnabled.12",
    "application/vnd.ms-excel.sheet.macroEnabled.12",
    "application/vnd.ms-powerpoint.presentation.macroEnabled.12",
)

OPENOFFICE_MIME_TYPES = (
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
    "application/vnd.oasis.opendocument.graphics",
)

OFFICE_LIKE_MIME_TYPES = OFFICE_MIME_TYPES + OPENOFFICE_MIME_TYPES

_MEMBER_PREFIXES = (
    "xl/worksheets/",
    "word/media/",
    "ppt/slides/",
    "Pictures/",
)

_MEMBER_NAMES = frozenset(
    (
        "xl/sharedStrings.xml",
        "xl/workbook.xml",
        "word/document.xml",
        "ppt/presentation.xml",
        "content.xml",
        "styles.xml",
        "mimetype",
        "[Content_Types].xml",
    ),
)

_CONTAINER_MARKERS = ("[Content_Types].xml", "mimetype")

_ZIP_SIGNATURE = b"PK\x03\x04"


def is_office_like(mime_type: str | None) -> bool:
    """Return whether server hashes are unreliable for ``mime_type``."""
    return bool(mime_type) and mime_type in OFFICE_LIKE_MIME_TYPES


def is_google_native(mime_type: str | None) -> bool:
    """Return whether ``mime_type`` is a Google-native document type."""
    return bool(mime_type) and mime_type.startswith("application/vnd.google-apps.")


def checksum_cheap(mod_time: datetime, size: int) -> str:
    """Return the cheap checksum for a modification time and size.

    The time is normalised to UTC at whole-second precision so that values
    round-tripped through filesystems and object metadata compare equal.
    """
    stamp = to_utc(mod_time).replace(microsecond=0).isoformat()
    return f"{stamp}-{int(size)}"


def is_semantic_member(name: str) -> bool:
    """Return whether a container member takes part in the content checksum."""
    return name in _MEMBER_NAMES or name.startswith(_MEMBER_PREFIXES)


def checksum_content(
    ctx: Context,
    stream: BinaryIO,
    algorithm: ChecksumAlgorithm = "sha256",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Hash a stream, treating office containers specially.

    Args:
        ctx: Cancellation context, checked between chunks.
        stream: Readable binary stream positioned at the start.
        algorithm: Hash algorithm name.
        chunk_size: Bytes read per iteration.

    Returns:
        Hexadecimal digest.

    """
    seekable = reader_to_temp_file(ctx, stream)
    try:
        start = seekable.tell()
        head = seekable.read(len(_ZIP_SIGNATURE))
        seekable.seek(start)
        if head == _ZIP_SIGNATURE:
            digest = _checksum_container(ctx, seekable, algorithm, chunk_size)
            if digest is not None:
                return digest
            seekable.seek(start)
        return _checksum_stream(ctx, seekable, algorithm, chunk_size)
    finally:
        if seekable is not stream:
            seekable.close()


def _checksum_stream(
    ctx: Context,
    stream: BinaryIO,
    algorithm: ChecksumAlgorithm,
    chunk_size: int,
) -> str:
    hasher = get_hasher(algorithm)
    while True:
        ctx.raise_if_done()
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
    return hasher.hexdigest()


def _checksum_container(
    ctx: Context,
    stream: BinaryIO,
    algorithm: ChecksumAlgorithm,
    chunk_size: int,
) -> str | None:
    try:
        archive = zipfile.ZipFile(stream)
    except zipfile.BadZipFile:
        return None
    with archive:
        names = archive.namelist()
        if not any(marker in names for marker in _CONTAINER_MARKERS):
            return None
        hasher = get_hasher(algorithm)
        for name in sorted(names):
            if not is_semantic_member(name) or name.endswith("/"):
                continue
            hasher.update(name.encode("utf-8"))
            with archive.open(name) as member:
                while True:
                    ctx.raise_if_done()
                    chunk = member.read(chunk_size)
                    if not chunk:
                        break
                    hasher.update(chunk)
        return hasher.hexdigest()


def checksum_bytes(payload: bytes, algorithm: ChecksumAlgorithm = "sha256") -> str:
    """Hash an in-memory payload with the content strategy."""
    return checksum_content(background(), io.BytesIO(payload), algorithm)
