"""Federated Google Drive backend implementation of Filesystem.

One flat namespace is stitched together from up to three sources, each
enabled independently:

- ``personal/files/...``: the bound account's My Drive.
- ``drives/<drive name>/files/...``: every shared drive the account sees.
- ``domains/<domain>/users/<email>/files/...``: the My Drive of every user
  in every domain the account administers, reached by impersonation.

The backend is read-only. Google-native documents are exported (OOXML
preferred) when opened.

Example:

    >>> from storesync import GoogleDriveFilesystem
    >>> backend = GoogleDriveFilesystem(
    ...     {
    ...         "account_file": "/etc/storesync/service-account.json",
    ...         "subject": "admin@example.com",
    ...         "shared_drives": True,
    ...         "other_users": True,
    ...     },
    ... )

"""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, Optional

import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from .checksums import (
    checksum_cheap,
    checksum_content,
    is_google_native,
    is_office_like,
)
from .context import ContextError
from .drive_listing import (
    DEFAULT_WORKERS,
    FILE_FIELDS,
    LISTING_ERRORS,
    SHORTCUT_MIME_TYPE,
    DriveFile,
    walk_folder,
)
from .interfaces import (
    BackendIOError,
    Entry,
    FileBackendError,
    Filesystem,
    InvalidOperationError,
    Location,
    NotFoundError,
    UnsupportedOperationError,
)
from .path_utils import validate_location
from .temp import SelfDeletingFile
from .transport import MAX_ATTEMPTS, MIN_SLEEP, RetryHttp
from .utils import as_bool

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from .context import Context
else:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

PERSONAL = "personal"
DRIVES = "drives"
DOMAINS = "domains"
USERS = "users"
FILES = "files"

DRIVE_SCOPES = ("https://www.googleapis.com/auth/drive.readonly",)
DIRECTORY_SCOPES = (
    "https://www.googleapis.com/auth/admin.directory.domain.readonly",
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
)

DOWNLOAD_CHUNK_SIZE = 8 * 1024 * 1024
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

ServiceBuilder = Callable[[str, str, Optional[str]], Any]


def default_service_builder(
    account_file: str,
    *,
    min_sleep: float = MIN_SLEEP,
    max_attempts: int = MAX_ATTEMPTS,
) -> ServiceBuilder:
    """Return a builder producing rate-limit-aware Google API services.

    Args:
        account_file: Path to a service account JSON key with domain-wide
            delegation.
        min_sleep: Backoff unit used when the API answers 429.
        max_attempts: Requests issued before giving up on a rate limit.

    """
    credentials = service_account.Credentials.from_service_account_file(
        account_file,
        scopes=[*DRIVE_SCOPES, *DIRECTORY_SCOPES],
    )

    def build_service(api: str, version: str, subject: str | None) -> Any:
        scoped = credentials.with_subject(subject) if subject else credentials
        http = RetryHttp(
            AuthorizedHttp(scoped, http=httplib2.Http()),
            min_sleep=min_sleep,
            max_attempts=max_attempts,
        )
        return build(api, version, http=http, cache_discovery=False)

    return build_service


def _quote(name: str) -> str:
    return name.replace("\\", "\\\\").replace("'", "\\'")


def _translate_error(exc: HttpError, location: Location) -> FileBackendError:
    status = getattr(exc.resp, "status", None)
    if status is not None and int(status) == 404:
        return NotFoundError(location)
    return BackendIOError(f"Drive API error ({status})", location=location)


@dataclass(frozen=True)
class _Scope:
    """One sub-namespace: who to act as and where its tree starts."""

    prefix: Location
    subject: str | None
    root_id: str
    corpora: str
    drive_id: str | None = None


class GoogleDriveFilesystem(Filesystem):
    """Read-only backend spanning personal, shared and domain-user drives."""

    def __init__(
        self,
        connection_info: Mapping[str, Any],
        *,
        service_builder: ServiceBuilder | None = None,
    ) -> None:
        """Initialise the backend using Google connection parameters.

        Args:
            connection_info: Mapping with ``account_file`` and optional
                ``subject``, ``current_account`` (default true),
                ``shared_drives``, ``other_users``, ``workers`` and
                ``min_sleep``.
            service_builder: Callable ``(api, version, subject)`` returning a
                Google API service; replaces the service-account builder.

        """
        if not isinstance(connection_info, Mapping):
            message = "connection_info must be a mapping"
            raise TypeError(message)

        self._subject = connection_info.get("subject") or None
        self._current_account = as_bool(
            connection_info.get("current_account"),
            default=True,
        )
        self._shared_drives = as_bool(connection_info.get("shared_drives"))
        self._other_users = as_bool(connection_info.get("other_users"))
        self._workers = int(connection_info.get("workers", DEFAULT_WORKERS))

        if service_builder is None:
            account_file = connection_info.get("account_file")
            if not account_file:
                message = "Missing 'account_file' in connection_info"
                raise ValueError(message)
            service_builder = default_service_builder(
                str(account_file),
                min_sleep=float(connection_info.get("min_sleep", MIN_SLEEP)),
            )
        self._build_service = service_builder

        self._local = threading.local()
        self._export_lock = threading.Lock()
        self._export_formats: dict[str, list[str]] | None = None
        self._drives_lock = threading.Lock()
        self._drive_ids: dict[str, str] = {}

    def _service(self, api: str, version: str, subject: str | None) -> Any:
        services = getattr(self._local, "services", None)
        if services is None:
            services = self._local.services = {}
        key = (api, version, subject)
        if key not in services:
            services[key] = self._build_service(api, version, subject)
        return services[key]

    def _drive_service(self, subject: str | None) -> Any:
        return self._service("drive", "v3", subject)

    def _directory_service(self) -> Any:
        return self._service("admin", "directory_v1", self._subject)

    # Namespace resolution

    def shared_drives(self) -> list[tuple[str, str]]:
        """Return ``(name, id)`` for every visible shared drive, sorted by name."""
        service = self._drive_service(self._subject)
        drives: list[tuple[str, str]] = []
        page_token = None
        while True:
            params: dict[str, Any] = {
                "pageSize": 100,
                "fields": "nextPageToken,drives(id,name)",
            }
            if page_token:
                params["pageToken"] = page_token
            response = service.drives().list(**params).execute()
            drives.extend(
                (item["name"], item["id"]) for item in response.get("drives", [])
            )
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        drives.sort(key=lambda item: item[0])
        with self._drives_lock:
            for name, drive_id in reversed(drives):
                self._drive_ids[name] = drive_id
        return drives

    def _drive_id(self, name: str, location: Location) -> str:
        with self._drives_lock:
            drive_id = self._drive_ids.get(name)
        if drive_id is None:
            try:
                drives = self.shared_drives()
            except HttpError as exc:
                raise _translate_error(exc, location) from exc
            drive_id = next((item_id for item_name, item_id in drives if item_name == name), None)
        if drive_id is None:
            raise NotFoundError(location)
        return drive_id

    def domains(self) -> list[str]:
        """Return the domains administered by the account, sorted."""
        response = (
            self._directory_service()
            .domains()
            .list(customer="my_customer")
            .execute()
        )
        return sorted(item["domainName"] for item in response.get("domains", []))

    def users(self, domain: str) -> Iterator[str]:
        """Yield the primary email of every user in ``domain``."""
        service = self._directory_service()
        page_token = None
        while True:
            params: dict[str, Any] = {"domain": domain, "orderBy": "email"}
            if page_token:
                params["pageToken"] = page_token
            response = service.users().list(**params).execute()
            for user in response.get("users", []):
                yield user["primaryEmail"]
            page_token = response.get("nextPageToken")
            if not page_token:
                break

    def _scope_for(self, location: Location) -> tuple[_Scope, Location]:
        location = validate_location(location)
        head = location[0]
        if (
            head == PERSONAL
            and self._current_account
            and len(location) > 2
            and location[1] == FILES
        ):
            return _Scope(location[:2], self._subject, "root", "user"), location[2:]
        if (
            head == DRIVES
            and self._shared_drives
            and len(location) > 3
            and location[2] == FILES
        ):
            drive_id = self._drive_id(location[1], location)
            scope = _Scope(location[:3], self._subject, drive_id, "drive", drive_id)
            return scope, location[3:]
        if (
            head == DOMAINS
            and self._other_users
            and len(location) > 5
            and location[2] == USERS
            and location[4] == FILES
        ):
            return _Scope(location[:5], location[3], "root", "user"), location[5:]
        raise NotFoundError(location)

    def _scopes(self, ctx: Context) -> Iterator[_Scope]:
        if self._current_account:
            yield _Scope((PERSONAL, FILES), self._subject, "root", "user")
        if self._shared_drives and not ctx.done():
            try:
                drives = self.shared_drives()
            except ContextError:
                raise
            except LISTING_ERRORS as exc:
                logger.warning("Listing shared drives failed: %s", exc)
                drives = []
            for name, drive_id in drives:
                yield _Scope((DRIVES, name, FILES), self._subject, drive_id, "drive", drive_id)
        if self._other_users and not ctx.done():
            try:
                domains = self.domains()
            except ContextError:
                raise
            except LISTING_ERRORS as exc:
                logger.warning("Listing domains failed: %s", exc)
                domains = []
            for domain in domains:
                try:
                    for email in self.users(domain):
                        yield _Scope((DOMAINS, domain, USERS, email, FILES), email, "root", "user")
                except ContextError:
                    raise
                except LISTING_ERRORS as exc:
                    logger.warning("Listing users of %s failed: %s", domain, exc)

    # Lookup

    def _find(self, location: Location) -> tuple[_Scope, DriveFile]:
        scope, path = self._scope_for(location)
        service = self._drive_service(scope.subject)
        parent = scope.root_id
        record: DriveFile | None = None
        try:
            for index, name in enumerate(path):
                if record is not None and not record.is_folder:
                    raise NotFoundError(location)
                params: dict[str, Any] = {
                    "q": f"trashed=false and '{parent}' in parents and name='{_quote(name)}'",
                    "fields": f"files({FILE_FIELDS})",
                    "pageSize": 1,
                    "supportsAllDrives": True,
                    "includeItemsFromAllDrives": True,
                    "corpora": scope.corpora,
                }
                if scope.drive_id:
                    params["driveId"] = scope.drive_id
                matches = service.files().list(**params).execute().get("files", [])
                if not matches:
                    raise NotFoundError(location)
                record = DriveFile.from_api_response(matches[0], path[: index + 1])
                parent = record.id
        except HttpError as exc:
            raise _translate_error(exc, location) from exc
        if record is None:
            raise NotFoundError(location)
        return scope, record

    def _resolve_shortcut(
        self,
        scope: _Scope,
        record: DriveFile,
        location: Location,
    ) -> DriveFile:
        if record.mime_type != SHORTCUT_MIME_TYPE:
            return record
        if not record.shortcut_target_id:
            raise NotFoundError(location)
        service = self._drive_service(scope.subject)
        try:
            target = (
                service.files()
                .get(
                    fileId=record.shortcut_target_id,
                    fields=FILE_FIELDS,
                    supportsAllDrives=True,
                )
                .execute()
            )
        except HttpError as exc:
            raise _translate_error(exc, location) from exc
        return DriveFile.from_api_response(target, record.path)

    def export_mime_type(self, ctx: Context, mime_type: str) -> str | None:
        """Return the export format used for a Google-native ``mime_type``.

        Export formats are fetched once per backend instance.
        """
        with self._export_lock:
            if self._export_formats is None:
                service = self._drive_service(self._subject)
                about = service.about().get(fields="exportFormats").execute()
                self._export_formats = dict(about.get("exportFormats") or {})
            formats = list(self._export_formats.get(mime_type) or [])
        for candidate in formats:
            if "openxmlformats" in candidate:
                return candidate
        return formats[0] if formats else None

    # Filesystem operations

    def checksum_cheap(self, ctx: Context, location: Location) -> str:
        """Return a checksum from Drive's modifiedTime and size."""
        _, record = self._find(location)
        if record.modified_time is None:
            return ""
        return checksum_cheap(record.modified_time, record.size or 0)

    def checksum_content(self, ctx: Context, location: Location) -> str:
        """Return Drive's SHA-256, or hash the downloaded content."""
        scope, record = self._find(location)
        record = self._resolve_shortcut(scope, record, location)
        if (
            record.sha256
            and not is_office_like(record.mime_type)
            and not is_google_native(record.mime_type)
        ):
            return record.sha256
        with self._open_record(ctx, scope, record, location) as handle:
            return checksum_content(ctx, handle)

    def files(self, ctx: Context) -> Iterator[Entry]:
        """Yield files from every enabled source, one source after another."""
        for scope in self._scopes(ctx):
            if ctx.done():
                return
            factory = functools.partial(self._build_service, "drive", "v3", scope.subject)
            for record in walk_folder(
                ctx,
                factory,
                scope.root_id,
                corpora=scope.corpora,
                drive_id=scope.drive_id,
                workers=self._workers,
            ):
                yield Entry(
                    location=scope.prefix + record.path,
                    mod_time=record.modified_time or _EPOCH,
                )

    def open(self, ctx: Context, location: Location) -> BinaryIO:
        """Download or export the file into a self-deleting temp file."""
        ctx.raise_if_done()
        scope, record = self._find(location)
        record = self._resolve_shortcut(scope, record, location)
        return self._open_record(ctx, scope, record, location)

    def _open_record(
        self,
        ctx: Context,
        scope: _Scope,
        record: DriveFile,
        location: Location,
    ) -> BinaryIO:
        if record.is_folder:
            raise InvalidOperationError.cannot_read_directory(location)
        service = self._drive_service(scope.subject)
        try:
            if is_google_native(record.mime_type):
                export = self.export_mime_type(ctx, record.mime_type)
                if export is None:
                    raise UnsupportedOperationError.operation(
                        f"export of {record.mime_type}",
                        location,
                    )
                request = service.files().export_media(fileId=record.id, mimeType=export)
            else:
                request = service.files().get_media(
                    fileId=record.id,
                    supportsAllDrives=True,
                )
        except HttpError as exc:
            raise _translate_error(exc, location) from exc
        return self._download(ctx, request, location)

    @staticmethod
    def _download(ctx: Context, request: Any, location: Location) -> BinaryIO:
        target = SelfDeletingFile.create()
        try:
            downloader = MediaIoBaseDownload(target, request, chunksize=DOWNLOAD_CHUNK_SIZE)
            done = False
            while not done:
                ctx.raise_if_done()
                _, done = downloader.next_chunk()
            target.seek(0)
        except HttpError as exc:
            target.close()
            raise _translate_error(exc, location) from exc
        except BaseException:
            target.close()
            raise
        return target

    def write_file(
        self,
        ctx: Context,
        location: Location,
        source: BinaryIO,
        mod_time: datetime,
    ) -> Location:
        """Raise: the Drive backend is read-only."""
        raise UnsupportedOperationError.operation("write_file", location)

    def remove_all(self, ctx: Context, location: Location) -> None:
        """Raise: the Drive backend is read-only."""
        raise UnsupportedOperationError.operation("remove_all", location)

    def move(self, ctx: Context, old: Location, new: Location) -> Location:
        """Raise: the Drive backend is read-only."""
        raise UnsupportedOperationError.operation("move", old)
