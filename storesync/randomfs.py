"""Read-only filesystem of deterministic pseudo-random files.

Useful as a sync source in tests and benchmarks: the same seed always
produces the same locations, sizes and bytes.
"""

from __future__ import annotations

import io
import random
from datetime import datetime, timezone
from typing import TYPE_CHECKING, BinaryIO

from .checksums import checksum_cheap, checksum_content
from .interfaces import (
    Entry,
    Filesystem,
    Location,
    NotFoundError,
    UnsupportedOperationError,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .context import Context

DEFAULT_MOD_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RandomFilesystem(Filesystem):
    """Backend exposing ``count`` generated files."""

    def __init__(
        self,
        count: int,
        *,
        max_size: int = 64 * 1024,
        seed: int | None = None,
        depth: int = 3,
        mod_time: datetime = DEFAULT_MOD_TIME,
    ) -> None:
        """Generate the file layout.

        Args:
            count: Number of files.
            max_size: Upper bound for a file's size in bytes.
            seed: Seed for layout and content; random when omitted.
            depth: Maximum number of directories above a file.
            mod_time: Modification time reported for every file.

        """
        if count < 0 or max_size < 0 or depth < 0:
            message = "count, max_size and depth must not be negative"
            raise ValueError(message)
        self._seed = seed if seed is not None else random.randrange(2**32)
        self._mod_time = mod_time
        layout = random.Random(self._seed)
        self._files: dict[Location, tuple[int, int]] = {}
        for index in range(count):
            folders = tuple(
                f"dir-{layout.randrange(16):02d}" for _ in range(layout.randint(0, depth))
            )
            location = folders + (f"file-{index:06d}.bin",)
            self._files[location] = (index, layout.randint(0, max_size))

    def _lookup(self, location: Location) -> tuple[int, int]:
        try:
            return self._files[tuple(location)]
        except KeyError:
            raise NotFoundError(location) from None

    def content(self, location: Location) -> bytes:
        """Return the bytes of the file at ``location``."""
        index, size = self._lookup(location)
        generator = random.Random(f"{self._seed}:{index}")
        return generator.randbytes(size)

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        _, size = self._lookup(location)
        return checksum_cheap(self._mod_time, size)

    def checksum_content(self, ctx: Context, location: Location) -> str:
        return checksum_content(ctx, io.BytesIO(self.content(location)))

    def files(self, ctx: Context) -> Iterator[Entry]:
        for location in list(self._files):
            if ctx.done():
                return
            yield Entry(location=location, mod_time=self._mod_time)

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        ctx.raise_if_done()
        return io.BytesIO(self.content(location))

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        raise UnsupportedOperationError.operation("write_file", location)

    def remove_all(self, ctx: Context, location: Location) -> None:
        raise UnsupportedOperationError.operation("remove_all", location)

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        raise UnsupportedOperationError.operation("move", old)
