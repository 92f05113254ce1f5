"""Seekable, self-deleting temp files for streams that need random access."""

from __future__ import annotations

import io
import logging
import os
import tempfile
import weakref
from typing import TYPE_CHECKING, Any, BinaryIO

from .utils import copy_context

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

TEMP_PREFIX = "storesync-"


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _close_and_remove(handle: BinaryIO, path: str) -> None:
    try:
        handle.close()
    finally:
        _remove_quietly(path)


class SelfDeletingFile(io.RawIOBase):
    """Binary file handle that removes its backing file when closed.

    Closing always removes the file, including when closing the underlying
    handle raises. Objects that are garbage collected without being closed
    are cleaned up by a finalizer.
    """

    def __init__(self, handle: BinaryIO, path: str) -> None:
        """Wrap an open handle whose backing file lives at ``path``."""
        super().__init__()
        self._handle = handle
        self._path = path
        self._finalizer = weakref.finalize(self, _close_and_remove, handle, path)

    @classmethod
    def create(cls, *, suffix: str = "", directory: str | None = None) -> SelfDeletingFile:
        """Create an empty read/write temp file."""
        handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
            mode="w+b",
            prefix=TEMP_PREFIX,
            suffix=suffix,
            dir=directory,
            delete=False,
        )
        return cls(handle, handle.name)

    @property
    def name(self) -> str:
        """Return the path of the backing file."""
        return self._path

    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        return self._handle.read(size)

    def readinto(self, buffer: Any) -> int:
        return self._handle.readinto(buffer)

    def write(self, data: Any) -> int:
        return self._handle.write(data)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._handle.seek(offset, whence)

    def tell(self) -> int:
        return self._handle.tell()

    def flush(self) -> None:
        if not self._handle.closed:
            self._handle.flush()

    def fileno(self) -> int:
        return self._handle.fileno()

    def size(self) -> int:
        """Return the current size of the backing file in bytes."""
        self.flush()
        return os.fstat(self._handle.fileno()).st_size

    def close(self) -> None:
        """Close the handle and remove the backing file."""
        if self.closed:
            return
        try:
            self._finalizer()
        finally:
            super().close()


def reader_to_temp_file(ctx: Context, source: BinaryIO) -> BinaryIO:
    """Return a seekable file holding the content of ``source``.

    Seekable on-disk files are returned unchanged and remain owned by the
    caller. Any other stream is copied to a :class:`SelfDeletingFile`
    positioned at offset zero.

    Raises:
        ContextError: If the context is done during the copy.

    """
    if isinstance(source, SelfDeletingFile) or _is_disk_file(source):
        return source

    temp = SelfDeletingFile.create()
    try:
        copy_context(ctx, source, temp)
        temp.seek(0)
    except BaseException:
        temp.close()
        raise
    logger.debug("Buffered stream into %s", temp.name)
    return temp


def _is_disk_file(source: Any) -> bool:
    if not isinstance(source, (io.BufferedReader, io.BufferedRandom, io.FileIO)):
        return False
    try:
        os.fstat(source.fileno())
        return source.seekable()
    except (OSError, ValueError):
        return False
