"""Core interfaces and data structures for storage backend implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO, Literal, Tuple

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from .context import Context

Location = Tuple[str, ...]

DEFAULT_CHUNK_SIZE = 1024 * 1024

ChecksumAlgorithm = Literal["md5", "sha256", "sha512", "blake3"]


def format_location(location: Location | None) -> str:
    """Render a location for messages, keeping segment boundaries visible."""
    if location is None:
        return ""
    return "/".join(segment.replace("/", "%2F") for segment in location)


class FileBackendError(RuntimeError):
    """Base exception for backend operations."""

    def __init__(
        self,
        message: str,
        *,
        location: Location | None = None,
    ) -> None:
        """Initialise the base error with an optional location context."""
        location_tuple = tuple(location) if location is not None else None
        detail = (
            message
            if location_tuple is None
            else ": ".join((message, format_location(location_tuple)))
        )
        super().__init__(detail)
        self.message = message
        self.location = location_tuple


class NotFoundError(FileBackendError):
    """Raised when an expected file is missing."""

    def __init__(self, location: Location) -> None:
        """Create a not-found error for the provided location."""
        super().__init__("Location not found", location=location)


class UnsupportedOperationError(FileBackendError):
    """Raised when a backend does not implement an operation."""

    @classmethod
    def operation(
        cls,
        name: str,
        location: Location | None = None,
    ) -> UnsupportedOperationError:
        """Return an error naming the unsupported operation."""
        return cls(f"Operation not supported: {name}", location=location)


class InvalidOperationError(FileBackendError):
    """Raised when an operation is not allowed for the given location."""

    @classmethod
    def empty_location(cls) -> InvalidOperationError:
        """Return an error when an operation targets an empty location."""
        return cls("Location cannot be empty")

    @classmethod
    def empty_segment(cls, location: Location) -> InvalidOperationError:
        """Return an error when a location contains an empty segment."""
        return cls("Location segments cannot be empty", location=location)

    @classmethod
    def traversal_segment(cls, location: Location) -> InvalidOperationError:
        """Return an error showing the location escapes the backend root."""
        return cls("Location escapes backend root", location=location)

    @classmethod
    def cannot_read_directory(cls, location: Location) -> InvalidOperationError:
        """Return an error indicating directories cannot be read as files."""
        return cls("Cannot read directory", location=location)


class TransientRemoteError(FileBackendError):
    """Raised when a remote service keeps rate limiting after all retries."""


class BackendIOError(FileBackendError):
    """Raised when a disk, stream or remote API call fails."""


@dataclass(frozen=True)
class Entry:
    """Snapshot of a file produced while enumerating a backend."""

    location: Location
    mod_time: datetime

    def __str__(self) -> str:
        """Return the location in slash-joined form."""
        return format_location(self.location)


class Filesystem(ABC):
    """Uniform contract for storage backends.

    Every operation receives a :class:`~storesync.context.Context` which
    carries cancellation and deadlines. Backends are used concurrently for
    the lifetime of a sync and are never torn down explicitly.
    """

    @abstractmethod
    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        """Return a metadata-only checksum derived from mod time and size.

        Args:
            ctx: Cancellation context.
            location: File to inspect.

        Returns:
            Opaque checksum string; empty means unknown.

        Raises:
            NotFoundError: If the location does not exist.

        """

    @abstractmethod
    def checksum_content(self, ctx: Context, location: Location) -> str:
        """Return a checksum derived from file contents.

        Server-provided hashes are preferred when they are reliable for the
        file's type; otherwise the content is downloaded and hashed.

        Args:
            ctx: Cancellation context.
            location: File to inspect.

        Returns:
            Hexadecimal digest.

        Raises:
            NotFoundError: If the location does not exist.

        """

    @abstractmethod
    def files(self, ctx: Context) -> Iterator[Entry]:
        """Lazily enumerate every file in the backend.

        A fresh iterator is returned on each call. Enumeration stops
        without error once ``ctx`` is done, and closing the iterator early
        releases any producer resources.

        Args:
            ctx: Cancellation context.

        Yields:
            Entries in no particular order.

        """

    @abstractmethod
    def open(self, ctx: Context, location: Location) -> BinaryIO:
        """Open a file for reading.

        Args:
            ctx: Cancellation context.
            location: File to open.

        Returns:
            Readable binary stream owned by the caller.

        Raises:
            NotFoundError: If the location does not exist.

        """

    @abstractmethod
    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Persist ``source`` at ``location`` stamped with ``mod_time``.

        A failed write never leaves an addressable partial file behind.

        Args:
            ctx: Cancellation context.
            location: Target location.
            source: Readable binary stream.
            mod_time: Modification time to record for the file.

        Returns:
            The location actually written, which may differ from the input.

        """

    @abstractmethod
    def remove_all(self, ctx: Context, location: Location) -> None:
        """Remove a file, or everything below a location."""

    @abstractmethod
    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        """Move a file and return its final location."""
