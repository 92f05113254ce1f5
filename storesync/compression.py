"""Compression decorator for any Filesystem.

Writes store whichever rendition is smaller, the raw bytes or their gzip
compression, so already-compressed inputs are not inflated. Reads sniff
the stored bytes and decompress transparently when they are gzip.

Example:

    >>> from storesync import CompressedFilesystem, LocalFilesystem
    >>> backend = CompressedFilesystem(LocalFilesystem("/data/archive"), level=6)

"""

from __future__ import annotations

import gzip
import io
from typing import TYPE_CHECKING, Any, BinaryIO

from .checksums import checksum_content
from .interfaces import DEFAULT_CHUNK_SIZE, Filesystem, Location
from .temp import SelfDeletingFile

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from .context import Context
    from .interfaces import Entry

GZIP_MAGIC = b"\x1f\x8b"


class _PrefixedReader(io.RawIOBase):
    """Replays already-consumed leading bytes before the rest of a stream."""

    def __init__(self, head: bytes, stream: BinaryIO) -> None:
        super().__init__()
        self._head = head
        self._stream = stream

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        if self._head:
            count = min(len(view), len(self._head))
            view[:count] = self._head[:count]
            self._head = self._head[count:]
            return count
        data = self._stream.read(len(view))
        count = len(data)
        view[:count] = data
        return count

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._stream.close()
        finally:
            super().close()


class _GzipReader(gzip.GzipFile):
    """GzipFile that also closes the stream it decompresses."""

    def __init__(self, source: BinaryIO) -> None:
        super().__init__(filename="", mode="rb", fileobj=source)
        self._source_stream = source

    def close(self) -> None:
        try:
            super().close()
        finally:
            self._source_stream.close()


def _read_head(stream: BinaryIO, size: int) -> bytes:
    head = b""
    while len(head) < size:
        chunk = stream.read(size - len(head))
        if not chunk:
            break
        head += chunk
    return head


class CompressedFilesystem(Filesystem):
    """Decorator storing the smaller of raw and gzip renditions."""

    def __init__(self, inner: Filesystem, *, level: int = 9) -> None:
        """Wrap ``inner``; ``level`` is the gzip compression level (1-9)."""
        if not 1 <= level <= 9:
            message = f"Compression level must be between 1 and 9, got {level}"
            raise ValueError(message)
        self._inner = inner
        self._level = level

    @property
    def inner(self) -> Filesystem:
        """Return the wrapped backend."""
        return self._inner

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        return self._inner.checksum_cheap(ctx, location)

    def checksum_content(self, ctx: Context, location: Location) -> str:
        """Hash the decompressed content."""
        with self.open(ctx, location) as handle:
            return checksum_content(ctx, handle)

    def files(self, ctx: Context) -> Iterator[Entry]:
        return self._inner.files(ctx)

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        """Open the stored file, decompressing it when it is gzip."""
        stream = self._inner.open(ctx, location)
        try:
            head = _read_head(stream, len(GZIP_MAGIC))
        except BaseException:
            stream.close()
            raise
        replay = io.BufferedReader(_PrefixedReader(head, stream))
        if head == GZIP_MAGIC:
            return _GzipReader(replay)
        return replay

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Buffer raw and gzip renditions and forward the smaller one."""
        raw = SelfDeletingFile.create()
        packed = SelfDeletingFile.create(suffix=".gz")
        try:
            with gzip.GzipFile(
                filename="",
                mode="wb",
                fileobj=packed,
                compresslevel=self._level,
                mtime=0,
            ) as compressor:
                while True:
                    ctx.raise_if_done()
                    chunk = source.read(DEFAULT_CHUNK_SIZE)
                    if not chunk:
                        break
                    raw.write(chunk)
                    compressor.write(chunk)
            chosen = packed if packed.size() < raw.size() else raw
            chosen.seek(0)
            return self._inner.write_file(ctx, location, chosen, mod_time)
        finally:
            raw.close()
            packed.close()

    def remove_all(self, ctx: Context, location: Location) -> None:
        self._inner.remove_all(ctx, location)

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        return self._inner.move(ctx, old, new)
