"""Local directory backend implementation of Filesystem.

Files live below a root directory. Each location segment maps to one path
component; segments containing ``/`` are escaped so they stay a single
component.

Key Features:
    - Background directory walk feeding a bounded queue
    - Caller-supplied modification times preserved on write
    - Partial files removed when a write fails

Example:

    >>> from storesync import LocalFilesystem
    >>> from storesync.context import background
    >>> backend = LocalFilesystem("/data/mirror")
    >>> for entry in backend.files(background()):
    ...     print(entry.location, entry.mod_time)

"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import threading
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Union

from .checksums import checksum_cheap, checksum_content
from .interfaces import (
    DEFAULT_CHUNK_SIZE,
    BackendIOError,
    Entry,
    Filesystem,
    InvalidOperationError,
    Location,
    NotFoundError,
)
from .path_utils import escape_segment, unescape_segment, validate_location
from .utils import copy_context, timestamp_to_datetime, to_utc

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from .context import Context

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

FILES_QUEUE_SIZE = 1000
_POLL_INTERVAL = 0.1
_DONE = object()


class LocalFilesystem(Filesystem):
    """Backend implementation backed by a local directory."""

    def __init__(
        self,
        root: PathLike,
        *,
        dir_mode: int = 0o755,
        file_mode: int = 0o644,
        create_root: bool = True,
    ) -> None:
        """Initialise the backend rooted at the given directory.

        Args:
            root: Directory holding the files.
            dir_mode: Permission bits for directories created on write.
            file_mode: Permission bits for files created on write.
            create_root: Create the root directory when it is missing.

        """
        self._root = Path(root).expanduser().resolve(strict=False)
        self._dir_mode = dir_mode
        self._file_mode = file_mode
        if create_root:
            self._root.mkdir(mode=dir_mode, parents=True, exist_ok=True)
        elif not self._root.is_dir():
            message = "Root directory does not exist"
            raise BackendIOError(message, location=(str(self._root),))

    @property
    def root(self) -> Path:
        """Return the root directory."""
        return self._root

    def _path_for(self, location: Location) -> Path:
        segments = validate_location(location)
        return self._root.joinpath(*(escape_segment(part) for part in segments))

    def _location_for(self, path: str) -> Location:
        relative = os.path.relpath(path, self._root)
        return tuple(unescape_segment(part) for part in relative.split(os.sep))

    def _stat_file(self, location: Location) -> os.stat_result:
        path = self._path_for(location)
        try:
            stat = path.stat()
        except FileNotFoundError as exc:
            raise NotFoundError(location) from exc
        except OSError as exc:
            message = "Failed to stat file"
            raise BackendIOError(message, location=location) from exc
        if path.is_dir():
            raise InvalidOperationError.cannot_read_directory(location)
        return stat

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        """Return a checksum built from the file's mtime and size."""
        stat = self._stat_file(location)
        return checksum_cheap(timestamp_to_datetime(stat.st_mtime), stat.st_size)

    def checksum_content(self, ctx: Context, location: Location) -> str:
        """Hash the file contents."""
        with self.open(ctx, location) as handle:
            return checksum_content(ctx, handle)

    def files(self, ctx: Context) -> Iterator[Entry]:
        """Walk the root in a background thread and yield regular files."""
        entries: queue.Queue = queue.Queue(maxsize=FILES_QUEUE_SIZE)
        stop = threading.Event()
        producer = threading.Thread(
            target=self._walk,
            args=(ctx, entries, stop),
            name="storesync-local-walk",
            daemon=True,
        )
        producer.start()
        try:
            while True:
                try:
                    item = entries.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    if ctx.done():
                        return
                    continue
                if item is _DONE or ctx.done():
                    return
                yield item
        finally:
            stop.set()

    def _walk(self, ctx: Context, entries: queue.Queue, stop: threading.Event) -> None:
        pending = [str(self._root)]
        try:
            while pending:
                directory = pending.pop()
                try:
                    with os.scandir(directory) as iterator:
                        for dirent in iterator:
                            if dirent.is_dir(follow_symlinks=False):
                                pending.append(dirent.path)
                                continue
                            if not dirent.is_file(follow_symlinks=False):
                                continue
                            stat = dirent.stat(follow_symlinks=False)
                            entry = Entry(
                                location=self._location_for(dirent.path),
                                mod_time=timestamp_to_datetime(stat.st_mtime),
                            )
                            if not self._put(ctx, entries, stop, entry):
                                return
                except OSError as exc:
                    logger.warning("Skipping unreadable directory %s: %s", directory, exc)
        finally:
            self._put(ctx, entries, stop, _DONE)

    @staticmethod
    def _put(
        ctx: Context,
        entries: queue.Queue,
        stop: threading.Event,
        item: object,
    ) -> bool:
        while not stop.is_set() and not ctx.done():
            try:
                entries.put(item, timeout=_POLL_INTERVAL)
            except queue.Full:
                continue
            return True
        return False

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        """Open the file for binary reading."""
        ctx.raise_if_done()
        path = self._path_for(location)
        try:
            return path.open("rb")
        except FileNotFoundError as exc:
            raise NotFoundError(location) from exc
        except IsADirectoryError as exc:
            raise InvalidOperationError.cannot_read_directory(location) from exc
        except OSError as exc:
            message = "Failed to open file"
            raise BackendIOError(message, location=location) from exc

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Write ``source`` to disk and stamp it with ``mod_time``."""
        location = validate_location(location)
        target = self._path_for(location)
        ctx.raise_if_done()
        try:
            target.parent.mkdir(mode=self._dir_mode, parents=True, exist_ok=True)
        except OSError as exc:
            message = "Failed to create parent directories"
            raise BackendIOError(message, location=location) from exc

        created = False
        try:
            descriptor = os.open(
                target,
                os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                self._file_mode,
            )
            created = True
            with open(descriptor, "wb", buffering=DEFAULT_CHUNK_SIZE) as handle:
                copy_context(ctx, source, handle)
            timestamp = to_utc(mod_time).timestamp()
            os.utime(target, (timestamp, timestamp))
        except OSError as exc:
            if created:
                self._discard(target)
            message = "Failed to write file"
            raise BackendIOError(message, location=location) from exc
        except BaseException:
            if created:
                self._discard(target)
            raise
        return location

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove partial file %s: %s", path, exc)

    def remove_all(self, ctx: Context, location: Location) -> None:
        """Remove a file or a directory tree; missing locations are ignored."""
        path = self._path_for(location)
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
        except OSError as exc:
            message = "Failed to remove"
            raise BackendIOError(message, location=location) from exc

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        """Rename a file, creating parent directories of the target."""
        new = validate_location(new)
        source = self._path_for(old)
        target = self._path_for(new)
        if not source.exists():
            raise NotFoundError(old)
        try:
            target.parent.mkdir(mode=self._dir_mode, parents=True, exist_ok=True)
            os.replace(source, target)
        except OSError as exc:
            message = "Failed to move"
            raise BackendIOError(message, location=old) from exc
        return new
