"""Tests for the transient error retry wrapper."""

from __future__ import annotations

from unittest import mock

import pytest
from azure.core.exceptions import HttpResponseError

from azure_mock import http_error, not_found
from provisioner.retry import backoff_seconds, call_with_retry, is_transient


class TestIsTransient:
    """Tests for transient classification."""

    @pytest.mark.parametrize("code", [409, 429, 500, 502, 503, 504])
    def test_transient(self, code: int) -> None:
        assert is_transient(http_error(code))

    @pytest.mark.parametrize("code", [400, 401, 403, 412])
    def test_not_transient(self, code: int) -> None:
        assert not is_transient(http_error(code))

    def test_not_found_is_not_transient(self) -> None:
        assert not is_transient(not_found())

    def test_non_http_error(self) -> None:
        assert not is_transient(ValueError("x"))


class TestBackoff:
    """Tests for backoff computation."""

    def test_exponential_with_bounded_jitter(self) -> None:
        for attempt, base in ((1, 5.0), (2, 10.0), (3, 20.0)):
            wait = backoff_seconds(attempt, 5.0)
            assert base <= wait <= base * 1.2


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self) -> None:
        call = mock.AsyncMock(side_effect=[http_error(429), http_error(503), "ok"])

        result = await call_with_retry(call, "get", attempts=3, base_backoff_seconds=0)

        assert result == "ok"
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self) -> None:
        call = mock.AsyncMock(side_effect=http_error(409, "AnotherOperationInProgress"))

        with pytest.raises(HttpResponseError) as exc_info:
            await call_with_retry(call, "put", attempts=2, base_backoff_seconds=0)

        assert exc_info.value.status_code == 409
        assert call.await_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_raised_immediately(self) -> None:
        call = mock.AsyncMock(side_effect=http_error(400, "BadRequest"))

        with pytest.raises(HttpResponseError):
            await call_with_retry(call, "put", attempts=5, base_backoff_seconds=0)

        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_not_found_raised_immediately(self) -> None:
        call = mock.AsyncMock(side_effect=not_found())

        with pytest.raises(HttpResponseError):
            await call_with_retry(call, "get", attempts=5, base_backoff_seconds=0)

        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_last_error_is_raised(self) -> None:
        last = http_error(503, "ServiceUnavailable")
        call = mock.AsyncMock(side_effect=[http_error(429), http_error(500), last])

        with pytest.raises(HttpResponseError) as exc_info:
            await call_with_retry(call, "put", attempts=3, base_backoff_seconds=0)

        assert exc_info.value is last
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_single_attempt_does_not_retry(self) -> None:
        call = mock.AsyncMock(side_effect=http_error(429))

        with pytest.raises(HttpResponseError):
            await call_with_retry(call, "get", attempts=1, base_backoff_seconds=0)

        assert call.await_count == 1
