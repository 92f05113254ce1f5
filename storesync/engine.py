"""Copy and Sync between two Filesystem backends.

Four modes share one per-item algorithm:

=============  ==========================  ===================================
Mode           Concurrency                 On a per-item error
=============  ==========================  ===================================
copy           sequential                  raise immediately
copy_workers   at most ``workers`` items   stop dispatching and raise
sync           sequential                  log and continue
sync_workers   at most ``workers`` items   log and continue
=============  ==========================  ===================================

Cancellation and deadline errors are fatal in every mode. Every mode waits
for its in-flight transfers before returning or raising.

Example:
    >>> from storesync import LocalFilesystem, sync_workers
    >>> from storesync.context import background, with_timeout
    >>> with with_timeout(background(), 3600) as ctx:
    ...     stats = sync_workers(16, ctx, LocalFilesystem("/mirror"), drive)
    >>> stats.as_dict()
    {'copied': 12, 'skipped': 988, 'failed': 0, 'total': 1000}

"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .context import is_context_error
from .interfaces import FileBackendError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .context import Context
    from .interfaces import Entry, Filesystem

logger = logging.getLogger(__name__)

COPIED = "copied"
SKIPPED = "skipped"
FAILED = "failed"


class TransferError(FileBackendError):
    """Raised when copying one entry between backends fails."""

    def __init__(self, entry: Entry, cause: BaseException) -> None:
        """Wrap ``cause`` with the entry that failed."""
        super().__init__(f"Failed to transfer ({cause})", location=entry.location)
        self.entry = entry
        self.cause = cause


@dataclass
class TransferStats:
    """Per-run counters; safe to update from worker threads."""

    copied: int = 0
    skipped: int = 0
    failed: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock,
        init=False,
        repr=False,
        compare=False,
    )

    def record(self, outcome: str) -> None:
        """Count one item with outcome ``copied``, ``skipped`` or ``failed``."""
        with self._lock:
            setattr(self, outcome, getattr(self, outcome) + 1)

    @property
    def total(self) -> int:
        """Return the number of items processed."""
        return self.copied + self.skipped + self.failed

    def as_dict(self) -> dict[str, int]:
        """Return a JSON-serialisable representation."""
        with self._lock:
            return {
                "copied": self.copied,
                "skipped": self.skipped,
                "failed": self.failed,
                "total": self.copied + self.skipped + self.failed,
            }


def transfer_entry(
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
    entry: Entry,
    *,
    strict: bool = True,
) -> str:
    """Copy one entry unless both cheap checksums match.

    Args:
        ctx: Cancellation context.
        dst: Destination backend.
        src: Source backend.
        entry: Entry from ``src.files``.
        strict: Raise when the source checksum fails instead of treating it
            as unknown.

    Returns:
        ``"copied"`` or ``"skipped"``.

    """
    ctx.raise_if_done()
    location = entry.location
    try:
        source_checksum = src.checksum_cheap(ctx, location)
    except FileBackendError as exc:
        if strict or is_context_error(exc):
            raise
        logger.debug("Source checksum unavailable for %s: %s", entry, exc)
        source_checksum = ""
    try:
        destination_checksum = dst.checksum_cheap(ctx, location)
    except FileBackendError as exc:
        if is_context_error(exc):
            raise
        destination_checksum = ""

    if source_checksum and source_checksum == destination_checksum:
        logger.debug("SKIP: %s", entry)
        return SKIPPED

    with src.open(ctx, location) as stream:
        dst.write_file(ctx, location, stream, entry.mod_time)
    return COPIED


@contextmanager
def _entries(ctx: Context, src: Filesystem) -> Iterator[Iterator[Entry]]:
    iterator = iter(src.files(ctx))
    try:
        yield iterator
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()


def _limit_reached(count: int, max_files: int | None) -> bool:
    return max_files is not None and max_files > 0 and count >= max_files


class WorkerPool:
    """Counting-semaphore pool with a bounded error queue.

    ``acquire`` blocks until the context is done, a task error is pending, or
    a permit frees up, and honours them in that order. Tasks run on a thread
    pool of the same size and always give their permit back.
    """

    def __init__(self, ctx: Context, workers: int) -> None:
        """Create a pool allowing ``workers`` concurrent tasks."""
        if workers < 1:
            message = f"workers must be at least 1, got {workers}"
            raise ValueError(message)
        self._ctx = ctx
        self._capacity = workers
        self._permits = workers
        self._errors: deque[BaseException] = deque()
        self._closing = False
        self._condition = threading.Condition()
        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="storesync-worker",
        )
        ctx.add_done_callback(self._wake)

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.join()

    def _wake(self, _ctx: Context | None = None) -> None:
        with self._condition:
            self._condition.notify_all()

    def acquire(self) -> BaseException | None:
        """Take a permit, or return the next pending task error.

        Raises:
            ContextError: If the context is done.

        """
        with self._condition:
            while True:
                self._ctx.raise_if_done()
                if self._errors:
                    error = self._errors.popleft()
                    self._condition.notify_all()
                    return error
                if self._permits > 0:
                    self._permits -= 1
                    return None
                self._condition.wait(self._ctx.remaining())

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run ``fn(*args)`` on the pool using a permit from :meth:`acquire`."""
        try:
            self._executor.submit(self._run, fn, *args)
        except BaseException:
            self._release()
            raise

    def next_error(self) -> BaseException | None:
        """Pop a pending task error without waiting."""
        with self._condition:
            if not self._errors:
                return None
            error = self._errors.popleft()
            self._condition.notify_all()
            return error

    def join(self) -> None:
        """Wait for every submitted task; later errors stay queued."""
        with self._condition:
            self._closing = True
            self._condition.notify_all()
        self._executor.shutdown(wait=True)
        self._ctx.remove_done_callback(self._wake)

    def _release(self) -> None:
        with self._condition:
            self._permits += 1
            self._condition.notify_all()

    def _push_error(self, error: BaseException) -> None:
        with self._condition:
            while (
                len(self._errors) >= self._capacity
                and not self._closing
                and not self._ctx.done()
            ):
                self._condition.wait()
            self._errors.append(error)
            self._condition.notify_all()

    def _run(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as exc:
            self._push_error(exc)
        finally:
            self._release()


def _raise_any(error: BaseException) -> None:
    raise error


def _log_unless_fatal(error: BaseException) -> None:
    if is_context_error(error):
        raise error
    logger.error("%s", error)


def _run_task(
    stats: TransferStats,
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
    entry: Entry,
    strict: bool,
) -> None:
    try:
        outcome = transfer_entry(ctx, dst, src, entry, strict=strict)
    except Exception as exc:
        stats.record(FAILED)
        if is_context_error(exc):
            raise
        raise TransferError(entry, exc) from exc
    stats.record(outcome)


def _run_pool(
    workers: int,
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
    *,
    strict: bool,
    on_error: Callable[[BaseException], None],
    max_files: int | None = None,
) -> TransferStats:
    stats = TransferStats()
    with WorkerPool(ctx, workers) as pool:
        with _entries(ctx, src) as entries:
            for count, entry in enumerate(entries):
                if _limit_reached(count, max_files):
                    break
                while True:
                    error = pool.acquire()
                    if error is None:
                        break
                    on_error(error)
                pool.submit(_run_task, stats, ctx, dst, src, entry, strict)
        pool.join()
        error = pool.next_error()
        while error is not None:
            on_error(error)
            error = pool.next_error()
    ctx.raise_if_done()
    return stats


def copy(ctx: Context, dst: Filesystem, src: Filesystem) -> TransferStats:
    """Copy every changed file from ``src`` to ``dst``, one at a time.

    Raises:
        TransferError: On the first failing entry.
        ContextError: If the context is cancelled or expires.

    """
    stats = TransferStats()
    with _entries(ctx, src) as entries:
        for entry in entries:
            _run_task(stats, ctx, dst, src, entry, True)
    ctx.raise_if_done()
    return stats


def copy_workers(
    workers: int,
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
) -> TransferStats:
    """Copy with at most ``workers`` concurrent transfers.

    Dispatch stops at the first error, which is raised once in-flight
    transfers have finished.

    Raises:
        TransferError: On the first failing entry.
        ContextError: If the context is cancelled or expires.

    """
    return _run_pool(workers, ctx, dst, src, strict=True, on_error=_raise_any)


def sync(
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
    *,
    max_files: int | None = None,
) -> TransferStats:
    """Best-effort sequential sync; failed entries are logged and counted.

    Args:
        ctx: Cancellation context.
        dst: Destination backend.
        src: Source backend.
        max_files: Stop after this many entries; ``None`` or ``0`` means all.

    Raises:
        ContextError: If the context is cancelled or expires.

    """
    stats = TransferStats()
    with _entries(ctx, src) as entries:
        for count, entry in enumerate(entries):
            if _limit_reached(count, max_files):
                break
            try:
                _run_task(stats, ctx, dst, src, entry, False)
            except TransferError as exc:
                logger.error("%s", exc)
    ctx.raise_if_done()
    logger.info(
        "Sync finished: %d copied, %d skipped, %d failed",
        stats.copied,
        stats.skipped,
        stats.failed,
    )
    return stats


def sync_workers(
    workers: int,
    ctx: Context,
    dst: Filesystem,
    src: Filesystem,
    *,
    max_files: int | None = None,
) -> TransferStats:
    """Best-effort sync with at most ``workers`` concurrent transfers.

    Raises:
        ContextError: If the context is cancelled or expires.

    """
    stats = _run_pool(
        workers,
        ctx,
        dst,
        src,
        strict=False,
        on_error=_log_unless_fatal,
        max_files=max_files,
    )
    logger.info(
        "Sync finished: %d copied, %d skipped, %d failed",
        stats.copied,
        stats.skipped,
        stats.failed,
    )
    return stats
