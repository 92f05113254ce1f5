"""Tests for cheap and content checksum strategies."""

from __future__ import annotations

import hashlib
import io
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from storesync.checksums import (
    checksum_bytes,
    checksum_cheap,
    checksum_content,
    is_google_native,
    is_office_like,
    is_semantic_member,
)
from storesync.context import ContextCancelledError, background


def _docx(document: bytes, *, stamp: tuple[int, ...], extra: bytes = b"") -> bytes:
    """Build a minimal OOXML container with the given member timestamp."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, payload in (
            ("[Content_Types].xml", b"<Types/>"),
            ("word/document.xml", document),
            ("docProps/core.xml", b"<core>" + extra + b"</core>"),
        ):
            info = zipfile.ZipInfo(name, date_time=stamp)
            archive.writestr(info, payload)
    return buffer.getvalue()


class TestChecksumCheap:
    """Tests for checksum_cheap."""

    def test_format(self) -> None:
        """Mod time and size are rendered as ISO seconds plus size."""
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert checksum_cheap(stamp, 10) == "2024-01-02T03:04:05+00:00-10"

    def test_sub_second_precision_is_ignored(self) -> None:
        """Backends that store whole seconds still compare equal."""
        stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert checksum_cheap(stamp.replace(microsecond=999_999), 10) == checksum_cheap(stamp, 10)

    def test_timezones_are_normalised(self) -> None:
        """The same instant in different zones has the same checksum."""
        utc = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        local = utc.astimezone(timezone(timedelta(hours=-5)))
        assert checksum_cheap(local, 3) == checksum_cheap(utc, 3)

    def test_size_change_changes_checksum(self) -> None:
        """Different sizes never compare equal."""
        stamp = datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert checksum_cheap(stamp, 1) != checksum_cheap(stamp, 2)


class TestChecksumContent:
    """Tests for checksum_content."""

    def test_plain_stream(self) -> None:
        """Ordinary content hashes to the plain digest."""
        assert checksum_bytes(b"hello") == hashlib.sha256(b"hello").hexdigest()

    def test_algorithm_selection(self) -> None:
        """Other algorithms can be requested."""
        digest = checksum_content(background(), io.BytesIO(b"hello"), "md5")
        assert digest == hashlib.md5(b"hello").hexdigest()  # noqa: S324

    def test_office_container_ignores_zip_metadata(self) -> None:
        """Re-exported containers with new timestamps hash the same."""
        first = _docx(b"<doc>same</doc>", stamp=(2020, 1, 1, 0, 0, 0))
        second = _docx(b"<doc>same</doc>", stamp=(2024, 6, 1, 12, 0, 0), extra=b"edited")
        assert first != second
        assert checksum_bytes(first) == checksum_bytes(second)

    def test_office_container_detects_content_changes(self) -> None:
        """A change in a semantic member changes the checksum."""
        first = _docx(b"<doc>one</doc>", stamp=(2020, 1, 1, 0, 0, 0))
        second = _docx(b"<doc>two</doc>", stamp=(2020, 1, 1, 0, 0, 0))
        assert checksum_bytes(first) != checksum_bytes(second)

    def test_plain_zip_hashes_whole_stream(self) -> None:
        """Zips without office markers are hashed byte for byte."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("notes.txt", b"hello")
        payload = buffer.getvalue()
        assert checksum_bytes(payload) == hashlib.sha256(payload).hexdigest()

    def test_corrupt_zip_falls_back_to_stream(self) -> None:
        """Bytes that only look like a zip are hashed as a stream."""
        payload = b"PK\x03\x04 definitely not a zip"
        assert checksum_bytes(payload) == hashlib.sha256(payload).hexdigest()

    def test_cancelled_context(self) -> None:
        """A done context aborts hashing."""
        ctx = background()
        ctx.cancel()
        with pytest.raises(ContextCancelledError):
            checksum_content(ctx, io.BytesIO(b"hello"))


class TestMimeHelpers:
    """Tests for MIME classification helpers."""

    def test_office_like(self) -> None:
        """OOXML and ODF types are office-like; others are not."""
        assert is_office_like(
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )
        assert is_office_like("application/vnd.oasis.opendocument.text")
        assert not is_office_like("text/plain")
        assert not is_office_like(None)

    def test_google_native(self) -> None:
        """Google Apps types are native."""
        assert is_google_native("application/vnd.google-apps.document")
        assert not is_google_native("application/pdf")
        assert not is_google_native(None)

    def test_semantic_members(self) -> None:
        """Only content-bearing members take part in the hash."""
        assert is_semantic_member("word/document.xml")
        assert is_semantic_member("xl/worksheets/sheet1.xml")
        assert is_semantic_member("content.xml")
        assert not is_semantic_member("docProps/core.xml")
