"""Tests for location validation and key conversion."""

import pytest

from storesync.interfaces import InvalidOperationError, format_location
from storesync.path_utils import (
    escape_segment,
    key_to_location,
    location_to_key,
    unescape_segment,
    validate_location,
)


class TestValidateLocation:
    """Tests for validate_location."""

    def test_valid_location(self) -> None:
        """Valid locations are returned as tuples."""
        assert validate_location(["docs", "a.txt"]) == ("docs", "a.txt")
        assert validate_location(("a",)) == ("a",)

    def test_empty_location(self) -> None:
        """An empty location is rejected."""
        with pytest.raises(InvalidOperationError):
            validate_location(())

    def test_empty_segment(self) -> None:
        """Empty segments are rejected."""
        with pytest.raises(InvalidOperationError) as excinfo:
            validate_location(("docs", "", "a.txt"))
        assert excinfo.value.location == ("docs", "", "a.txt")

    @pytest.mark.parametrize("segment", [".", ".."])
    def test_traversal_segment(self, segment: str) -> None:
        """Dot segments cannot escape the backend root."""
        with pytest.raises(InvalidOperationError):
            validate_location(("docs", segment, "a.txt"))

    def test_string_is_rejected(self) -> None:
        """A plain string is a programming error, not a location."""
        with pytest.raises(TypeError):
            validate_location("docs/a.txt")


class TestEscaping:
    """Tests for segment escaping."""

    def test_slash_is_escaped(self) -> None:
        """Slashes inside a segment become %2F."""
        assert escape_segment("Q1/Q2 report") == "Q1%2FQ2 report"

    def test_percent_is_escaped_first(self) -> None:
        """Literal %2F text survives a round trip."""
        assert escape_segment("100%2F") == "100%252F"
        assert unescape_segment("100%252F") == "100%2F"

    def test_key_round_trip_keeps_segments(self) -> None:
        """A segment containing a slash stays one segment."""
        location = ("reports", "Q1/Q2", "summary.pdf")
        key = location_to_key(location)
        assert key == "reports/Q1%2FQ2/summary.pdf"
        assert key_to_location(key) == location

    def test_key_to_location_ignores_empty_parts(self) -> None:
        """Leading, trailing and doubled slashes do not create empty segments."""
        assert key_to_location("/a//b/") == ("a", "b")

    def test_format_location(self) -> None:
        """Messages show segment boundaries."""
        assert format_location(("a", "b/c")) == "a/b%2Fc"
        assert format_location(None) == ""
