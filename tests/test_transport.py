"""Tests for the rate-limit retrying HTTP wrapper."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from storesync import TransientRemoteError
from storesync.transport import RetryHttp


class ScriptedHttp:
    """httplib2 stand-in answering with a fixed list of statuses."""

    def __init__(self, statuses: list[int]) -> None:
        self.statuses = list(statuses)
        self.calls: list[tuple[str, dict]] = []
        self.timeout = 30

    def request(self, uri: str, **kwargs: object) -> tuple[SimpleNamespace, bytes]:
        self.calls.append((uri, kwargs))
        status = self.statuses.pop(0)
        return SimpleNamespace(status=status), b"body"


class TestRetryHttp:
    """Tests for RetryHttp."""

    def test_success_passes_through(self) -> None:
        """A non-429 response is returned immediately."""
        http = ScriptedHttp([200])
        sleeps: list[float] = []
        wrapper = RetryHttp(http, sleep=sleeps.append)
        response, content = wrapper.request("https://example.com", method="GET")
        assert response.status == 200
        assert content == b"body"
        assert sleeps == []
        assert http.calls == [("https://example.com", {"method": "GET"})]

    def test_retries_with_linear_backoff(self) -> None:
        """429 responses are retried with growing sleeps."""
        http = ScriptedHttp([429, 429, 200])
        sleeps: list[float] = []
        wrapper = RetryHttp(http, min_sleep=2.0, sleep=sleeps.append)
        response, _ = wrapper.request("https://example.com")
        assert response.status == 200
        assert sleeps == [2.0, 4.0]
        assert len(http.calls) == 3

    def test_gives_up_after_max_attempts(self) -> None:
        """Persistent rate limiting raises TransientRemoteError."""
        http = ScriptedHttp([429] * 3)
        sleeps: list[float] = []
        wrapper = RetryHttp(http, max_attempts=3, min_sleep=1.0, sleep=sleeps.append)
        with pytest.raises(TransientRemoteError):
            wrapper.request("https://example.com")
        assert len(http.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_other_errors_are_not_retried(self) -> None:
        """Server errors other than 429 are left to the caller."""
        http = ScriptedHttp([500])
        wrapper = RetryHttp(http, sleep=lambda _: None)
        response, _ = wrapper.request("https://example.com")
        assert response.status == 500
        assert len(http.calls) == 1

    def test_attributes_are_delegated(self) -> None:
        """Attributes of the wrapped object remain reachable."""
        wrapper = RetryHttp(ScriptedHttp([]))
        assert wrapper.timeout == 30

    def test_invalid_attempts(self) -> None:
        """At least one attempt is required."""
        with pytest.raises(ValueError, match="max_attempts"):
            RetryHttp(ScriptedHttp([]), max_attempts=0)
