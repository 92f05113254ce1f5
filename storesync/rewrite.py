"""Path-rewrite decorator: rewrites the target location of writes only."""

from __future__ import annotations

from typing import TYPE_CHECKING, BinaryIO, Callable

from .interfaces import Filesystem, Location
from .path_utils import validate_location

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from .context import Context
    from .interfaces import Entry

Rewrite = Callable[[Location], Location]


def prefix_rewrite(*segments: str) -> Rewrite:
    """Return a rewrite that places every written file under ``segments``.

    Example:
        >>> prefix_rewrite("backups", "2024")(("docs", "a.txt"))
        ('backups', '2024', 'docs', 'a.txt')

    """
    prefix = validate_location(segments)

    def rewrite(location: Location) -> Location:
        return prefix + tuple(location)

    return rewrite


class PathRewriteFilesystem(Filesystem):
    """Decorator applying ``rewrite`` to the location passed to ``write_file``.

    Enumeration, reads, removal and moves reach the inner backend verbatim.
    """

    def __init__(self, inner: Filesystem, rewrite: Rewrite) -> None:
        """Wrap ``inner`` with a pure location-rewriting function."""
        if not callable(rewrite):
            message = "rewrite must be callable"
            raise TypeError(message)
        self._inner = inner
        self._rewrite = rewrite

    @property
    def inner(self) -> Filesystem:
        """Return the wrapped backend."""
        return self._inner

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        return self._inner.checksum_cheap(ctx, location)

    def checksum_content(self, ctx: Context, location: Location) -> str:
        return self._inner.checksum_content(ctx, location)

    def files(self, ctx: Context) -> Iterator[Entry]:
        return self._inner.files(ctx)

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        return self._inner.open(ctx, location)

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Write to ``rewrite(location)`` and return the inner backend's result."""
        return self._inner.write_file(ctx, self._rewrite(tuple(location)), source, mod_time)

    def remove_all(self, ctx: Context, location: Location) -> None:
        self._inner.remove_all(ctx, location)

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        return self._inner.move(ctx, old, new)
