"""Tests for retry policy and backoff."""

from unittest.mock import AsyncMock

import httpx
import pytest
from azure.core.exceptions import ClientAuthenticationError

from compass.core.retry import RetryPolicy, call_with_retry, is_retryable_error, retry_after_of


def _status_error(status_code: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://management.azure.com/providers/Microsoft.ResourceGraph/resources")
    response = httpx.Response(status_code, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class TestRetryPolicy:
    """Test suite for RetryPolicy."""

    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert [policy.compute_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter=0.0)
        assert policy.compute_delay(3) == 15.0

    def test_retry_after_wins_when_longer(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert policy.compute_delay(0, retry_after=12.0) == 12.0

    def test_jitter_uses_rng(self):
        policy = RetryPolicy(base_delay=1.0, jitter=1.0)
        assert policy.compute_delay(0, rng=lambda low, high: 0.5) == 1.5

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRetryClassification:
    @pytest.mark.parametrize("status_code", [429, 500, 502, 503, 504])
    def test_throttling_and_server_errors_retry(self, status_code):
        assert is_retryable_error(_status_error(status_code)) is True

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    def test_client_errors_do_not_retry(self, status_code):
        assert is_retryable_error(_status_error(status_code)) is False

    def test_timeouts_retry(self):
        assert is_retryable_error(httpx.ReadTimeout("slow")) is True

    def test_authentication_errors_do_not_retry(self):
        assert is_retryable_error(ClientAuthenticationError("bad secret")) is False

    def test_retry_after_header_is_read(self):
        assert retry_after_of(_status_error(429, {"Retry-After": "7"})) == 7.0


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[_status_error(503), _status_error(429), "ok"])
        sleep = AsyncMock()

        result = await call_with_retry(
            func, policy=RetryPolicy(max_attempts=3, jitter=0.0), sleep=sleep
        )

        assert result == "ok"
        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=_status_error(500))
        sleep = AsyncMock()

        with pytest.raises(httpx.HTTPStatusError):
            await call_with_retry(func, policy=RetryPolicy(max_attempts=2, jitter=0.0), sleep=sleep)

        assert func.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(self):
        func = AsyncMock(side_effect=_status_error(403))
        sleep = AsyncMock()

        with pytest.raises(httpx.HTTPStatusError):
            await call_with_retry(func, policy=RetryPolicy(max_attempts=5), sleep=sleep)

        func.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_honours_retry_after(self):
        func = AsyncMock(side_effect=[_status_error(429, {"Retry-After": "9"}), "ok"])
        sleep = AsyncMock()

        await call_with_retry(
            func, policy=RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.0), sleep=sleep
        )

        sleep.assert_awaited_once_with(9.0)
