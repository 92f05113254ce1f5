"""Cancellation contexts shared by the engine and every backend.

A :class:`Context` is a thread-safe "done" signal with an optional deadline.
Children become done when their parent does, so a single cancel stops a
whole tree of work.

Example:
    >>> from storesync.context import background, with_timeout
    >>> with with_timeout(background(), 30) as ctx:
    ...     sync_workers(8, ctx, dst, src)

"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable

from .interfaces import FileBackendError


class ContextError(FileBackendError):
    """Base class for cancellation and deadline errors."""


class ContextCancelledError(ContextError):
    """Raised when work is abandoned because its context was cancelled."""

    def __init__(self, message: str = "Context cancelled") -> None:
        """Create a cancellation error."""
        super().__init__(message)


class DeadlineExceededError(ContextError):
    """Raised when work is abandoned because its deadline passed."""

    def __init__(self, message: str = "Context deadline exceeded") -> None:
        """Create a deadline error."""
        super().__init__(message)


DoneCallback = Callable[["Context"], None]


class Context:
    """Cancellable scope with an optional monotonic deadline."""

    def __init__(
        self,
        parent: Context | None = None,
        *,
        deadline: float | None = None,
    ) -> None:
        """Create a context, optionally bound to ``parent``.

        Args:
            parent: Context whose completion also completes this one.
            deadline: Absolute ``time.monotonic()`` value after which the
                context is done with :class:`DeadlineExceededError`.

        """
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: ContextError | None = None
        self._callbacks: list[DoneCallback] = []
        self._timer: threading.Timer | None = None

        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self._deadline = deadline

        if parent is not None:
            parent.add_done_callback(self._on_parent_done)
        if deadline is not None and not self._event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._finish(DeadlineExceededError())
            else:
                timer = threading.Timer(remaining, self._on_deadline)
                timer.daemon = True
                with self._lock:
                    if not self._event.is_set():
                        self._timer = timer
                        timer.start()

    @property
    def deadline(self) -> float | None:
        """Return the monotonic deadline, if any."""
        return self._deadline

    def remaining(self) -> float | None:
        """Return seconds left before the deadline, or ``None``."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        """Mark the context and all of its children as cancelled."""
        self._finish(ContextCancelledError())

    def done(self) -> bool:
        """Return whether the context has been cancelled or expired."""
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._finish(DeadlineExceededError())
            return True
        return False

    def err(self) -> ContextError | None:
        """Return the reason the context is done, or ``None``."""
        if not self.done():
            return None
        return self._error

    def raise_if_done(self) -> None:
        """Raise a fresh copy of the context error when done."""
        error = self.err()
        if error is not None:
            raise type(error)(error.message)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until done or ``timeout`` seconds pass."""
        if self._deadline is not None:
            remaining = self.remaining()
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.done()

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Run ``callback(ctx)`` once the context is done.

        The callback runs immediately when the context is already done.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        """Forget a callback registered with :meth:`add_done_callback`."""
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def __enter__(self) -> Context:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    def _on_parent_done(self, parent: Context) -> None:
        self._finish(parent.err() or ContextCancelledError())

    def _on_deadline(self) -> None:
        self._finish(DeadlineExceededError())

    def _finish(self, error: ContextError) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._error = error
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if self._parent is not None:
            self._parent.remove_done_callback(self._on_parent_done)
        for callback in callbacks:
            callback(self)


def background() -> Context:
    """Return a root context that is never done unless cancelled."""
    return Context()


def with_cancel(parent: Context) -> Context:
    """Return a cancellable child of ``parent``."""
    return Context(parent)


def with_timeout(parent: Context, seconds: float) -> Context:
    """Return a child of ``parent`` that expires after ``seconds``."""
    return Context(parent, deadline=time.monotonic() + seconds)


def with_deadline(parent: Context, when: datetime) -> Context:
    """Return a child of ``parent`` that expires at wall-clock ``when``."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    remaining = when.timestamp() - time.time()
    return Context(parent, deadline=time.monotonic() + remaining)


def is_context_error(exc: BaseException | None) -> bool:
    """Return whether ``exc`` or anything in its cause chain is a context error."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, ContextError):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False
