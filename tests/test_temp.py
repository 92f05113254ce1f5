"""Tests for self-deleting temp files."""

from __future__ import annotations

import gc
import io
import os
from typing import TYPE_CHECKING

import pytest

from storesync.context import ContextCancelledError, background
from storesync.temp import SelfDeletingFile, reader_to_temp_file

if TYPE_CHECKING:
    from pathlib import Path


class TestSelfDeletingFile:
    """Tests for SelfDeletingFile."""

    def test_close_removes_backing_file(self, tmp_path: Path) -> None:
        """The backing file disappears on close."""
        temp = SelfDeletingFile.create(directory=str(tmp_path))
        temp.write(b"payload")
        temp.seek(0)
        assert temp.read() == b"payload"
        assert os.path.exists(temp.name)
        temp.close()
        assert not os.path.exists(temp.name)

    def test_close_is_idempotent(self, tmp_path: Path) -> None:
        """Closing twice is harmless."""
        temp = SelfDeletingFile.create(directory=str(tmp_path))
        temp.close()
        temp.close()
        assert temp.closed

    def test_context_manager(self, tmp_path: Path) -> None:
        """Leaving a with block removes the file."""
        with SelfDeletingFile.create(directory=str(tmp_path)) as temp:
            temp.write(b"abc")
            assert temp.size() == 3
            name = temp.name
        assert not os.path.exists(name)

    def test_finalizer_removes_unclosed_file(self, tmp_path: Path) -> None:
        """A file that is never closed is removed once collected."""
        temp = SelfDeletingFile.create(directory=str(tmp_path))
        name = temp.name
        del temp
        gc.collect()
        assert not os.path.exists(name)

    def test_removed_when_close_of_handle_fails(self, tmp_path: Path) -> None:
        """The backing file is removed even if closing the handle raises."""
        path = tmp_path / "broken"
        path.write_bytes(b"")

        class BrokenHandle(io.BytesIO):
            failed = False

            def close(self) -> None:
                if not self.failed:
                    self.failed = True
                    raise OSError("close failed")
                super().close()

        temp = SelfDeletingFile(BrokenHandle(), str(path))
        with pytest.raises(OSError, match="close failed"):
            temp.close()
        assert not path.exists()

    def test_buffered_reader_over_temp(self, tmp_path: Path) -> None:
        """The raw handle works under io.BufferedReader."""
        temp = SelfDeletingFile.create(directory=str(tmp_path))
        temp.write(b"line one\nline two\n")
        temp.seek(0)
        with io.BufferedReader(temp) as reader:
            assert reader.readline() == b"line one\n"
        assert temp.closed


class TestReaderToTempFile:
    """Tests for reader_to_temp_file."""

    def test_copies_non_seekable_stream(self) -> None:
        """In-memory streams are copied to a self-deleting file."""
        result = reader_to_temp_file(background(), io.BytesIO(b"payload"))
        try:
            assert isinstance(result, SelfDeletingFile)
            assert result.read() == b"payload"
        finally:
            result.close()

    def test_disk_file_passes_through(self, tmp_path: Path) -> None:
        """An open disk file is returned as is."""
        path = tmp_path / "data.bin"
        path.write_bytes(b"payload")
        with path.open("rb") as handle:
            assert reader_to_temp_file(background(), handle) is handle

    def test_self_deleting_file_passes_through(self, tmp_path: Path) -> None:
        """A SelfDeletingFile is already suitable."""
        with SelfDeletingFile.create(directory=str(tmp_path)) as temp:
            assert reader_to_temp_file(background(), temp) is temp

    def test_cancelled_copy_leaves_nothing_behind(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A cancelled copy removes its partial temp file."""
        monkeypatch.setattr("tempfile.tempdir", str(tmp_path))
        ctx = background()
        ctx.cancel()
        with pytest.raises(ContextCancelledError):
            reader_to_temp_file(ctx, io.BytesIO(b"payload"))
        assert list(tmp_path.iterdir()) == []
