"""Storage abstraction and sync engine over heterogeneous backends.

This package provides one Filesystem contract for local directories,
S3-compatible buckets and a federated Google Drive namespace, decorators
that compose over any backend, and a concurrent Copy/Sync engine.

Core Components:
    - Filesystem: Abstract contract every backend implements
    - LocalFilesystem: Local directory storage
    - S3Filesystem: S3-compatible bucket with a read-through disk cache
    - GoogleDriveFilesystem: Personal, shared and domain-user drives (read-only)
    - CompressedFilesystem / PathRewriteFilesystem: Decorators
    - copy, copy_workers, sync, sync_workers: The transfer engine

Quick Start:

    >>> from storesync import LocalFilesystem, S3Filesystem, sync_workers
    >>> from storesync.context import background, with_timeout
    >>> src = LocalFilesystem("/data/documents")
    >>> dst = S3Filesystem({"bucket": "documents-backup"})
    >>> with with_timeout(background(), 3600) as ctx:
    ...     stats = sync_workers(16, ctx, dst, src)

Exception Handling:

    >>> from storesync import NotFoundError
    >>> try:
    ...     src.open(background(), ("missing.txt",))
    ... except NotFoundError:
    ...     print("File not found")

"""

from .compression import CompressedFilesystem
from .context import (
    Context,
    ContextCancelledError,
    ContextError,
    DeadlineExceededError,
    background,
    is_context_error,
    with_cancel,
    with_deadline,
    with_timeout,
)
from .drive import GoogleDriveFilesystem
from .engine import (
    TransferError,
    TransferStats,
    copy,
    copy_workers,
    sync,
    sync_workers,
)
from .factory import register_backend_factory, resolve_backend
from .interfaces import (
    DEFAULT_CHUNK_SIZE,
    BackendIOError,
    ChecksumAlgorithm,
    Entry,
    FileBackendError,
    Filesystem,
    InvalidOperationError,
    Location,
    NotFoundError,
    TransientRemoteError,
    UnsupportedOperationError,
)
from .local import LocalFilesystem
from .randomfs import RandomFilesystem
from .rewrite import PathRewriteFilesystem, prefix_rewrite
from .s3 import S3Filesystem
from .temp import SelfDeletingFile, reader_to_temp_file

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "BackendIOError",
    "ChecksumAlgorithm",
    "CompressedFilesystem",
    "Context",
    "ContextCancelledError",
    "ContextError",
    "DeadlineExceededError",
    "Entry",
    "FileBackendError",
    "Filesystem",
    "GoogleDriveFilesystem",
    "InvalidOperationError",
    "LocalFilesystem",
    "Location",
    "NotFoundError",
    "PathRewriteFilesystem",
    "RandomFilesystem",
    "S3Filesystem",
    "SelfDeletingFile",
    "TransferError",
    "TransferStats",
    "TransientRemoteError",
    "UnsupportedOperationError",
    "background",
    "copy",
    "copy_workers",
    "is_context_error",
    "prefix_rewrite",
    "reader_to_temp_file",
    "register_backend_factory",
    "resolve_backend",
    "sync",
    "sync_workers",
    "with_cancel",
    "with_deadline",
    "with_timeout",
]
