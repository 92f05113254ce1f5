"""Backend factory for URI-based backend resolution and instantiation.

Supported URI Schemes:
    - file://path - LocalFilesystem for a local directory
    - s3://bucket - S3Filesystem for one bucket
    - gdrive://subject - GoogleDriveFilesystem acting as ``subject``
      (``me`` means the service account itself)

Every scheme also accepts two decorator parameters:
    - compress=<level> wraps the backend in CompressedFilesystem
    - prefix=a/b wraps it in PathRewriteFilesystem writing under ``a/b``

Example:
    >>> from storesync.factory import resolve_backend
    >>> mirror = resolve_backend("file:///srv/mirror?compress=6")
    >>> bucket = resolve_backend(
    ...     "s3://backups?endpoint_url=https://minio.internal:9000&cache_expiry=600",
    ... )
    >>> drive = resolve_backend(
    ...     "gdrive://admin@example.com?account_file=/etc/sa.json&shared_drives=true",
    ... )

"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import parse_qs, urlparse

from .utils import as_bool

if TYPE_CHECKING:
    from typing import TypeAlias

    from .interfaces import Filesystem

    # Type alias for backend factory functions
    BackendFactoryFunc: TypeAlias = Callable[[str, dict[str, Any]], Filesystem]

_S3_PARAMS = ("endpoint_url", "access_key", "secret_key", "region", "cache_expiry", "cache_dir")
_DRIVE_PARAMS = ("account_file", "current_account", "shared_drives", "other_users", "workers", "min_sleep")
_SELF_SUBJECT = "me"


class BackendFactory:
    """Factory for creating backends from URI strings."""

    def __init__(self) -> None:
        """Initialize the factory with built-in URI scheme handlers."""
        self._factories: dict[str, Callable[[str, dict[str, Any]], Any]] = {
            "file": self._create_local_backend,
            "s3": self._create_s3_backend,
            "gdrive": self._create_drive_backend,
        }

    def parse_uri(self, uri: str) -> tuple[str, str, dict[str, str]]:
        """Parse a URI into scheme, path, and query parameters.

        Args:
            uri: URI string to parse

        Returns:
            Tuple of (scheme, path, params) where params is a dict of query parameters

        Raises:
            ValueError: If URI format is invalid

        """
        parsed = urlparse(uri)

        if not parsed.scheme:
            msg = f"Invalid URI: missing scheme in '{uri}'"
            raise ValueError(msg)

        # file://relative/path keeps the host part as the first component
        if parsed.netloc:
            path = parsed.netloc + (parsed.path or "")
        else:
            path = parsed.path

        if not path:
            msg = f"Invalid URI: missing path in '{uri}'"
            raise ValueError(msg)

        params: dict[str, str] = {}
        if parsed.query:
            params = {key: values[0] for key, values in parse_qs(parsed.query).items()}

        return parsed.scheme, path, params

    def resolve(self, uri: str) -> Filesystem:
        """Create a backend instance from a URI string.

        Args:
            uri: URI string specifying the backend configuration

        Returns:
            Filesystem instance, wrapped in decorators when requested

        Raises:
            ValueError: If URI scheme is unsupported
            FileBackendError: If backend creation fails

        """
        scheme, path, params = self.parse_uri(uri)

        if scheme not in self._factories:
            supported = ", ".join(sorted(self._factories.keys()))
            msg = (
                f"Unsupported URI scheme: '{scheme}'. "
                f"Supported schemes: {supported}"
            )
            raise ValueError(msg)

        backend = self._factories[scheme](path, params)
        return self._decorate(backend, params)

    def register(
        self,
        scheme: str,
        factory_func: Callable[[str, dict[str, Any]], Any],
    ) -> None:
        """Register a custom backend factory for a URI scheme.

        Args:
            scheme: URI scheme to register (e.g., "sftp", "azure")
            factory_func: Callable that takes (path, params) and returns a Filesystem

        """
        if not callable(factory_func):
            msg = "factory_func must be callable"
            raise TypeError(msg)
        self._factories[scheme] = factory_func

    @staticmethod
    def _decorate(backend: Filesystem, params: dict[str, Any]) -> Filesystem:
        if params.get("compress"):
            from .compression import CompressedFilesystem

            backend = CompressedFilesystem(backend, level=int(params["compress"]))
        if params.get("prefix"):
            from .rewrite import PathRewriteFilesystem, prefix_rewrite

            segments = [part for part in params["prefix"].split("/") if part]
            backend = PathRewriteFilesystem(backend, prefix_rewrite(*segments))
        return backend

    def _create_local_backend(
        self,
        path: str,
        params: dict[str, Any],
    ) -> Filesystem:
        """Create a LocalFilesystem from URI components.

        URI format: file:///srv/mirror?dir_mode=0o750&file_mode=0o640&create_root=true

        """
        from .local import LocalFilesystem

        return LocalFilesystem(
            path,
            dir_mode=int(params.get("dir_mode", "0o755"), 0),
            file_mode=int(params.get("file_mode", "0o644"), 0),
            create_root=as_bool(params.get("create_root"), default=True),
        )

    def _create_s3_backend(
        self,
        path: str,
        params: dict[str, Any],
    ) -> Filesystem:
        """Create an S3Filesystem from URI components.

        URI format: s3://bucket?endpoint_url=...&access_key=...&secret_key=...&region=...&cache_expiry=300

        """
        from .s3 import S3Filesystem

        connection_info: dict[str, Any] = {"bucket": path.strip("/")}
        for key in _S3_PARAMS:
            if key in params:
                connection_info[key] = params[key]
        return S3Filesystem(connection_info)

    def _create_drive_backend(
        self,
        path: str,
        params: dict[str, Any],
    ) -> Filesystem:
        """Create a GoogleDriveFilesystem from URI components.

        URI format: gdrive://admin@example.com?account_file=/etc/sa.json&shared_drives=true&other_users=true

        """
        from .drive import GoogleDriveFilesystem

        subject = path.strip("/")
        connection_info: dict[str, Any] = {
            "subject": None if subject == _SELF_SUBJECT else subject,
        }
        for key in _DRIVE_PARAMS:
            if key in params:
                connection_info[key] = params[key]
        return GoogleDriveFilesystem(connection_info)


# Global default factory instance
_default_factory = BackendFactory()


def resolve_backend(uri: str) -> Filesystem:
    """Resolve a backend from a URI using the default factory.

    Args:
        uri: URI string specifying the backend configuration

    Returns:
        Filesystem instance

    Raises:
        ValueError: If URI scheme is unsupported
        FileBackendError: If backend creation fails

    """
    return _default_factory.resolve(uri)


def register_backend_factory(
    scheme: str,
    factory_func: Callable[[str, dict[str, Any]], Any],
) -> None:
    """Register a custom backend factory for a URI scheme.

    Example:
        >>> def sftp_factory(path: str, params: dict) -> Filesystem:
        ...     return SftpFilesystem(host=path, **params)
        >>> register_backend_factory("sftp", sftp_factory)

    """
    _default_factory.register(scheme, factory_func)
