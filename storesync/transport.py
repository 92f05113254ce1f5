"""HTTP transport wrapper that retries rate-limited Google API calls.

``googleapiclient`` accepts any object exposing an httplib2-style
``request()`` method. :class:`RetryHttp` wraps such an object and retries
responses with status 429 using a linear backoff, independently of any
context cancellation in the engine.

Example:
    >>> import google_auth_httplib2, httplib2
    >>> authed = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http())
    >>> service = build("drive", "v3", http=RetryHttp(authed), cache_discovery=False)

"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .interfaces import TransientRemoteError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10
MIN_SLEEP = 60.0
RATE_LIMIT_STATUS = 429


class RetryHttp:
    """Retry 429 responses with ``(1 + attempt) * min_sleep`` backoff."""

    def __init__(
        self,
        http: Any,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        min_sleep: float = MIN_SLEEP,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wrap ``http`` with the retry policy.

        Args:
            http: httplib2-compatible object, usually an ``AuthorizedHttp``.
            max_attempts: Total number of requests issued before giving up.
            min_sleep: Backoff unit in seconds.
            sleep: Sleep function, replaceable in tests.

        """
        if max_attempts < 1:
            message = "max_attempts must be at least 1"
            raise ValueError(message)
        self.http = http
        self.max_attempts = max_attempts
        self.min_sleep = min_sleep
        self._sleep = sleep

    def request(self, uri: str, *args: Any, **kwargs: Any) -> tuple[Any, bytes]:
        """Issue the request, retrying while the server rate limits it."""
        for attempt in range(self.max_attempts):
            response, content = self.http.request(uri, *args, **kwargs)
            if int(getattr(response, "status", 0)) != RATE_LIMIT_STATUS:
                return response, content
            if attempt + 1 >= self.max_attempts:
                break
            delay = (1 + attempt) * self.min_sleep
            logger.warning(
                "Rate limited on %s (attempt %d/%d); retrying in %.1fs",
                uri,
                attempt + 1,
                self.max_attempts,
                delay,
            )
            self._sleep(delay)
        message = f"Rate limited after {self.max_attempts} attempts: {uri}"
        raise TransientRemoteError(message)

    def __getattr__(self, name: str) -> Any:
        if name == "http":
            raise AttributeError(name)
        return getattr(self.http, name)
