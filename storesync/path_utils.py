"""Location validation and key conversion utilities.

Locations are tuples of opaque segments. Backends that store files under
slash-delimited names (local paths, object keys) use these helpers so that
a segment containing ``/`` survives a round trip instead of silently
becoming two segments.

Key utilities:
- Location validation (non-empty, no empty or traversal segments)
- Segment escaping (``/`` <-> ``%2F``)
- Location <-> key conversion
"""

from __future__ import annotations

from typing import Iterable

from .interfaces import InvalidOperationError, Location

_TRAVERSAL_SEGMENTS = (".", "..")


def validate_location(location: Iterable[str]) -> Location:
    """Validate a location and return it as a tuple.

    Args:
        location: Sequence of path segments.

    Returns:
        The location as a tuple.

    Raises:
        InvalidOperationError: If the location is empty, has an empty
            segment, or contains a ``.``/``..`` segment.

    """
    if isinstance(location, str):
        message = "Location must be a sequence of segments, not a string"
        raise TypeError(message)
    result = tuple(location)
    if not result:
        raise InvalidOperationError.empty_location()
    for segment in result:
        if not segment:
            raise InvalidOperationError.empty_segment(result)
        if segment in _TRAVERSAL_SEGMENTS:
            raise InvalidOperationError.traversal_segment(result)
    return result


def escape_segment(segment: str) -> str:
    """Escape a segment so it can be stored as one slash-delimited name.

    Example:
        >>> escape_segment("Q1/Q2 report")
        'Q1%2FQ2 report'

    """
    return segment.replace("%", "%25").replace("/", "%2F")


def unescape_segment(segment: str) -> str:
    """Reverse :func:`escape_segment`."""
    return segment.replace("%2F", "/").replace("%25", "%")


def location_to_key(location: Iterable[str]) -> str:
    """Validate a location and join its escaped segments with ``/``."""
    return "/".join(escape_segment(part) for part in validate_location(location))


def key_to_location(key: str) -> Location:
    """Split a slash-delimited key into an unescaped location."""
    return tuple(unescape_segment(part) for part in key.split("/") if part)
