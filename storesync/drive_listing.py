"""Breadth-first recursive listing of a Google Drive folder tree.

Folders are listed concurrently on a thread pool. Every listing task is
counted before it is submitted and uncounted when it finishes, after any
sub-folders it found have been submitted. The walk is therefore complete
exactly when the counter drops to zero, however slow the API is.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import httplib2
from googleapiclient.errors import HttpError

from .interfaces import FileBackendError, Location
from .utils import parse_timestamp

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from datetime import datetime

    from .context import Context

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SHORTCUT_MIME_TYPE = "application/vnd.google-apps.shortcut"
FILE_FIELDS = "id,name,mimeType,sha256Checksum,modifiedTime,size,shortcutDetails"
LIST_FIELDS = f"nextPageToken,files({FILE_FIELDS})"
PAGE_SIZE = 1000
DEFAULT_WORKERS = 8

# Errors that end one listing call without ending the enumeration.
LISTING_ERRORS = (HttpError, FileBackendError, OSError, httplib2.HttpLib2Error)
DEFAULT_QUEUE_SIZE = 1000

_POLL_INTERVAL = 0.1
_DONE = object()

ServiceFactory = Callable[[], Any]


@dataclass(frozen=True)
class DriveFile:
    """File metadata returned by the Drive API, with its path from the root."""

    id: str
    name: str
    mime_type: str
    path: Location
    modified_time: datetime | None = None
    size: int | None = None
    sha256: str | None = None
    shortcut_target_id: str | None = None
    shortcut_target_mime_type: str | None = None

    @classmethod
    def from_api_response(
        cls,
        data: Mapping[str, Any],
        path: Location = (),
    ) -> DriveFile:
        """Build a record from a ``files`` resource."""
        shortcut = data.get("shortcutDetails") or {}
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            path=tuple(path),
            modified_time=parse_timestamp(data.get("modifiedTime")),
            size=int(size) if size is not None else None,
            sha256=data.get("sha256Checksum"),
            shortcut_target_id=shortcut.get("targetId"),
            shortcut_target_mime_type=shortcut.get("targetMimeType"),
        )

    @property
    def is_folder(self) -> bool:
        """Return whether the record is a folder."""
        return self.mime_type == FOLDER_MIME_TYPE


def list_params(
    parent_id: str,
    *,
    corpora: str = "user",
    drive_id: str | None = None,
    page_token: str | None = None,
) -> dict[str, Any]:
    """Return ``files().list`` arguments for the children of ``parent_id``."""
    params: dict[str, Any] = {
        "q": f"trashed=false and '{parent_id}' in parents",
        "pageSize": PAGE_SIZE,
        "fields": LIST_FIELDS,
        "supportsAllDrives": True,
        "includeItemsFromAllDrives": True,
        "corpora": corpora,
    }
    if drive_id:
        params["driveId"] = drive_id
    if page_token:
        params["pageToken"] = page_token
    return params


class _Traversal:
    """Shared state of one folder walk."""

    def __init__(
        self,
        ctx: Context,
        service_factory: ServiceFactory,
        *,
        corpora: str,
        drive_id: str | None,
        workers: int,
        queue_size: int,
    ) -> None:
        self.output: queue.Queue = queue.Queue(maxsize=queue_size)
        self._ctx = ctx
        self._service_factory = service_factory
        self._corpora = corpora
        self._drive_id = drive_id
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._outstanding = 0
        self._local = threading.local()
        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="storesync-drive",
        )
        ctx.add_done_callback(self._on_ctx_done)

    def start(self, root_id: str, root_path: Location) -> None:
        self._submit(root_id, root_path)

    def close(self) -> None:
        self._stop.set()
        self._ctx.remove_done_callback(self._on_ctx_done)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def stopped(self) -> bool:
        return self._stop.is_set() or self._ctx.done()

    def _on_ctx_done(self, _ctx: Context) -> None:
        self._stop.set()

    def _service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_factory()
            self._local.service = service
        return service

    def _submit(self, folder_id: str, path: Location) -> None:
        with self._lock:
            self._outstanding += 1
        try:
            self._executor.submit(self._list_folder, folder_id, path)
        except RuntimeError:
            self._finish_one()

    def _finish_one(self) -> None:
        with self._lock:
            self._outstanding -= 1
            finished = self._outstanding == 0
        if finished:
            self._put(_DONE)

    def _put(self, item: object) -> bool:
        while not self.stopped():
            try:
                self.output.put(item, timeout=_POLL_INTERVAL)
            except queue.Full:
                continue
            return True
        return False

    def _list_folder(self, folder_id: str, path: Location) -> None:
        try:
            service = self._service()
            page_token = None
            while not self.stopped():
                params = list_params(
                    folder_id,
                    corpora=self._corpora,
                    drive_id=self._drive_id,
                    page_token=page_token,
                )
                response = service.files().list(**params).execute()
                items = response.get("files", [])
                logger.debug("Listed %d items under %s", len(items), "/".join(path) or folder_id)
                for item in items:
                    record = DriveFile.from_api_response(item, path + (item.get("name", ""),))
                    if not record.name:
                        continue
                    if record.is_folder:
                        self._submit(record.id, record.path)
                    elif not self._put(record):
                        return
                page_token = response.get("nextPageToken")
                if not page_token:
                    break
        except LISTING_ERRORS as exc:
            logger.warning("Listing folder %s failed: %s", "/".join(path) or folder_id, exc)
        finally:
            self._finish_one()


def walk_folder(
    ctx: Context,
    service_factory: ServiceFactory,
    root_id: str,
    *,
    root_path: Location = (),
    corpora: str = "user",
    drive_id: str | None = None,
    workers: int = DEFAULT_WORKERS,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> Iterator[DriveFile]:
    """Yield every non-folder file below ``root_id``.

    Args:
        ctx: Cancellation context; the walk stops quietly once it is done.
        service_factory: Returns a Drive v3 service; called once per worker
            thread because the underlying HTTP client is not thread safe.
        root_id: Folder id to start from (``"root"`` or a shared drive id).
        root_path: Path prefix given to every yielded record.
        corpora: ``"user"`` or ``"drive"``.
        drive_id: Shared drive id when ``corpora`` is ``"drive"``.
        workers: Concurrent listing calls.
        queue_size: Files buffered ahead of the consumer.

    Yields:
        One record per file, in no particular order.

    """
    traversal = _Traversal(
        ctx,
        service_factory,
        corpora=corpora,
        drive_id=drive_id,
        workers=workers,
        queue_size=queue_size,
    )
    traversal.start(root_id, tuple(root_path))
    try:
        while True:
            try:
                item = traversal.output.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if traversal.stopped():
                    return
                continue
            if item is _DONE or ctx.done():
                return
            yield item
    finally:
        traversal.close()
