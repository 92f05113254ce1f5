"""Tests for the S3 backend using an in-memory client."""

from __future__ import annotations

import base64
import gzip
import hashlib
import io
import mimetypes
import os
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import pytest
from botocore.exceptions import EndpointConnectionError

from storesync import BackendIOError, NotFoundError, S3Filesystem
from storesync.checksums import checksum_cheap
from storesync.context import ContextCancelledError, background
from storesync.s3 import effective_mod_time, format_metadata_time
from tests.fakes import FakeS3Client

if TYPE_CHECKING:
    from pathlib import Path

STAMP = datetime(2024, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@pytest.fixture
def client() -> FakeS3Client:
    """Provide an empty fake bucket."""
    return FakeS3Client("bucket")


@pytest.fixture
def backend(client: FakeS3Client, tmp_path: Path) -> S3Filesystem:
    """Provide an S3 backend caching into a temporary directory."""
    return S3Filesystem(
        {"bucket": "bucket", "cache_dir": str(tmp_path), "cache_expiry": 60},
        client=client,
    )


class TestConfiguration:
    """Tests for connection_info validation."""

    def test_requires_mapping(self) -> None:
        """Non-mapping configuration is rejected."""
        with pytest.raises(TypeError):
            S3Filesystem(["bucket"], client=FakeS3Client())  # type: ignore[arg-type]

    def test_requires_bucket(self) -> None:
        """A bucket name is mandatory."""
        with pytest.raises(ValueError, match="bucket"):
            S3Filesystem({}, client=FakeS3Client())

    def test_builds_boto3_client(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Connection parameters are passed to boto3."""
        captured: dict[str, object] = {}

        def fake_client(service: str, **kwargs: object) -> FakeS3Client:
            captured["service"] = service
            captured.update(kwargs)
            return FakeS3Client()

        monkeypatch.setattr("storesync.s3.boto3.client", fake_client)
        S3Filesystem(
            {
                "bucket": "bucket",
                "endpoint_url": "http://localhost:9000",
                "access_key": "key",
                "secret_key": "secret",
                "region": "us-east-1",
            },
        )
        assert captured["service"] == "s3"
        assert captured["endpoint_url"] == "http://localhost:9000"
        assert captured["aws_access_key_id"] == "key"
        assert captured["aws_secret_access_key"] == "secret"
        assert captured["region_name"] == "us-east-1"


class TestWrite:
    """Tests for uploads."""

    def test_write_records_metadata(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """Uploads carry mtime metadata, content type and SHA-256."""
        backend.write_file(background(), ("docs", "a.txt"), io.BytesIO(b"hello"), STAMP)
        stored = client.objects["docs/a.txt"]
        assert stored.body == b"hello"
        assert stored.metadata["mtime"] == format_metadata_time(STAMP)
        assert stored.metadata["custom-mtime"] == format_metadata_time(STAMP)
        assert stored.content_type == "text/plain"
        expected = base64.b64encode(hashlib.sha256(b"hello").digest()).decode()
        assert stored.checksum_sha256 == expected

    def test_content_type_is_sniffed(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """Recognisable signatures win over an unknown extension."""
        payload = gzip.compress(b"data")
        backend.write_file(background(), ("blob",), io.BytesIO(payload), STAMP)
        assert client.objects["blob"].content_type == "application/gzip"

    def test_extension_wins_for_zip_containers(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Office files keep their specific type instead of application/zip."""
        mimetypes.add_type(DOCX_TYPE, ".docx")
        backend.write_file(background(), ("report.docx",), io.BytesIO(b"PK\x03\x04rest"), STAMP)
        assert client.objects["report.docx"].content_type == DOCX_TYPE

    def test_segment_with_slash_is_escaped(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Slashes inside a segment do not create extra key levels."""
        backend.write_file(background(), ("Q1/Q2", "a"), io.BytesIO(b"x"), STAMP)
        assert "Q1%2FQ2/a" in client.objects
        assert [entry.location for entry in backend.files(background())] == [("Q1/Q2", "a")]

    def test_failed_put_raises_backend_error(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Client errors surface as BackendIOError and nothing is stored."""
        client.fail_put = True
        with pytest.raises(BackendIOError):
            backend.write_file(background(), ("a",), io.BytesIO(b"x"), STAMP)
        assert client.objects == {}

    def test_cancelled_write(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """A done context prevents the upload."""
        ctx = background()
        ctx.cancel()
        with pytest.raises(ContextCancelledError):
            backend.write_file(ctx, ("a",), io.BytesIO(b"x"), STAMP)
        assert client.objects == {}


class TestChecksums:
    """Tests for checksum strategies."""

    def test_cheap_round_trips_mtime(self, backend: S3Filesystem) -> None:
        """The cheap checksum uses the recorded mtime, not LastModified."""
        backend.write_file(background(), ("a",), io.BytesIO(b"hello"), STAMP)
        assert backend.checksum_cheap(background(), ("a",)) == checksum_cheap(STAMP, 5)

    def test_cheap_falls_back_to_last_modified(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Objects uploaded by other tools use LastModified."""
        client.add("foreign", b"abc", last_modified=STAMP)
        assert backend.checksum_cheap(background(), ("foreign",)) == checksum_cheap(STAMP, 3)

    def test_effective_mod_time_prefers_custom_over_last_modified(self) -> None:
        """custom-mtime is honoured when mtime is absent."""
        head = {
            "Metadata": {"custom-mtime": "2020-01-01T00:00:00+00:00"},
            "LastModified": STAMP,
        }
        assert effective_mod_time(head) == datetime(2020, 1, 1, tzinfo=timezone.utc)

    def test_content_uses_stored_checksum(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """A stored SHA-256 is returned without downloading."""
        backend.write_file(background(), ("a",), io.BytesIO(b"hello"), STAMP)
        assert backend.checksum_content(background(), ("a",)) == hashlib.sha256(b"hello").hexdigest()
        assert client.get_object_calls == 0

    def test_content_downloads_when_no_checksum(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Objects without a stored checksum are downloaded and hashed."""
        client.add("foreign", b"hello")
        assert backend.checksum_content(background(), ("foreign",)) == (
            hashlib.sha256(b"hello").hexdigest()
        )
        assert client.get_object_calls == 1

    def test_content_ignores_composite_checksum(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
    ) -> None:
        """Multipart composite checksums are not content hashes."""
        client.add("multi", b"hello", checksum_sha256="abc=-2")
        assert backend.checksum_content(background(), ("multi",)) == (
            hashlib.sha256(b"hello").hexdigest()
        )

    def test_missing_object(self, backend: S3Filesystem) -> None:
        """Missing keys raise NotFoundError."""
        with pytest.raises(NotFoundError):
            backend.checksum_cheap(background(), ("missing",))
        with pytest.raises(NotFoundError):
            backend.open(background(), ("missing",))


class TestListing:
    """Tests for enumeration."""

    def test_files_lists_every_object(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """All pages are read and directory markers are skipped."""
        for name in ("a", "b", "c"):
            backend.write_file(background(), ("dir", name), io.BytesIO(b"x"), STAMP)
        client.add("dir/", b"")
        entries = list(backend.files(background()))
        assert sorted(entry.location for entry in entries) == [
            ("dir", "a"),
            ("dir", "b"),
            ("dir", "c"),
        ]
        assert all(entry.mod_time == STAMP for entry in entries)

    def test_files_stops_on_cancel(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """Enumeration ends quietly once the context is done."""
        for name in ("a", "b", "c"):
            client.add(name, b"x")
        ctx = background()
        iterator = backend.files(ctx)
        next(iterator)
        ctx.cancel()
        assert list(iterator) == []

    def test_head_connection_error_skips_only_that_key(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A transport failure on one head leaves the rest of the listing intact."""
        for name in ("a", "b", "c"):
            client.add(name, b"x")
        head_object = client.head_object

        def flaky_head(**params: Any) -> dict:
            if params["Key"] == "b":
                raise EndpointConnectionError(endpoint_url="http://s3.test")
            return head_object(**params)

        monkeypatch.setattr(client, "head_object", flaky_head)
        assert [entry.location for entry in backend.files(background())] == [("a",), ("c",)]

    def test_listing_error_ends_walk(self, tmp_path: Path) -> None:
        """A bucket listing failure is logged, not raised."""
        backend = S3Filesystem(
            {"bucket": "other", "cache_dir": str(tmp_path)},
            client=FakeS3Client("bucket"),
        )
        assert list(backend.files(background())) == []


class TestCache:
    """Tests for the read-through cache."""

    def test_second_open_uses_cache(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """Only the first open downloads the object."""
        client.add("a", b"hello")
        with backend.open(background(), ("a",)) as handle:
            assert handle.read() == b"hello"
        with backend.open(background(), ("a",)) as handle:
            assert handle.read() == b"hello"
        assert client.get_object_calls == 1
        assert os.path.exists(backend.cache_path(("a",)))

    def test_write_invalidates_cache(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """A write through the backend is visible to the next open."""
        client.add("a", b"old")
        with backend.open(background(), ("a",)) as handle:
            handle.read()
        backend.write_file(background(), ("a",), io.BytesIO(b"new"), STAMP)
        with backend.open(background(), ("a",)) as handle:
            assert handle.read() == b"new"

    def test_cache_expires(self, client: FakeS3Client, tmp_path: Path) -> None:
        """Cached copies are deleted after the expiry."""
        backend = S3Filesystem(
            {"bucket": "bucket", "cache_dir": str(tmp_path), "cache_expiry": 0.05},
            client=client,
        )
        client.add("a", b"hello")
        with backend.open(background(), ("a",)) as handle:
            handle.read()
        path = backend.cache_path(("a",))
        deadline = time.monotonic() + 5
        while os.path.exists(path) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not os.path.exists(path)

    def test_cancelled_download_leaves_no_cache(
        self,
        backend: S3Filesystem,
        client: FakeS3Client,
        tmp_path: Path,
    ) -> None:
        """A cancelled open leaves neither a cache file nor a temp file."""
        client.add("a", b"hello")
        ctx = background()
        ctx.cancel()
        with pytest.raises(ContextCancelledError):
            backend.open(ctx, ("a",))
        assert list(tmp_path.iterdir()) == []


class TestRemoveAndMove:
    """Tests for removal and moves."""

    def test_remove_all_removes_tree(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """The object and everything below it are deleted."""
        for key in ("tree", "tree/a", "tree/sub/b", "treehouse"):
            client.add(key, b"x")
        backend.remove_all(background(), ("tree",))
        assert sorted(client.objects) == ["treehouse"]

    def test_move(self, backend: S3Filesystem, client: FakeS3Client) -> None:
        """Move copies with metadata and deletes the source."""
        backend.write_file(background(), ("a",), io.BytesIO(b"x"), STAMP)
        assert backend.move(background(), ("a",), ("b",)) == ("b",)
        assert sorted(client.objects) == ["b"]
        assert backend.checksum_cheap(background(), ("b",)) == checksum_cheap(STAMP, 1)

    def test_move_missing(self, backend: S3Filesystem) -> None:
        """Moving a missing object raises NotFoundError."""
        with pytest.raises(NotFoundError):
            backend.move(background(), ("a",), ("b",))
