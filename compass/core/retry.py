"""Retry utilities for calls to Azure REST endpoints."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TypeVar

import httpx
from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)


logger = logging.getLogger(__name__)

T = TypeVar('T')

# Retryable HTTP status codes
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Non-retryable exceptions
NON_RETRYABLE_EXCEPTIONS = (
    ClientAuthenticationError,
    ValueError,
    TypeError,
    KeyError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` never
    retries. The delay before retry ``n`` (0-based) is
    ``base_delay * 2**n`` plus up to ``jitter`` seconds, capped at
    ``max_delay``. A server supplied ``Retry-After`` is honoured when it is
    longer.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must not be negative")

    def compute_delay(
        self,
        attempt: int,
        retry_after: float | None = None,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay += rng(0, self.jitter)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int, error: Exception) -> bool:
        """Whether another attempt is allowed after ``error``."""
        return attempt + 1 < self.max_attempts and is_retryable_error(error)


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is retryable.

    Timeouts and connection failures are retried like throttling; any
    authorization failure (401/403) is not.
    """
    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return False

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES

    # Timeouts, connect errors, broken connections
    if isinstance(error, (httpx.TransportError, ServiceRequestError, ServiceResponseError)):
        return True

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False


def retry_after_of(error: Exception) -> float | None:
    """Extract a server requested delay from an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return _parse_retry_after(error.response)
    return None


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str | None = None,
    **kwargs,
) -> T:
    """Await ``func(*args, **kwargs)`` under ``policy``.

    The last error is re-raised once attempts are exhausted or the error is
    not retryable.
    """
    name = description or getattr(func, "__name__", "call")

    for attempt in range(policy.max_attempts):
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable_error(e):
                logger.warning(f"Non-retryable error in {name}: {e}")
                raise

            if not policy.should_retry(attempt, e):
                logger.error(f"{name} failed after {attempt + 1} attempts: {e}")
                raise

            wait_time = policy.compute_delay(attempt, retry_after_of(e))
            logger.warning(
                f"{name} attempt {attempt + 1}/{policy.max_attempts} "
                f"failed: {e}. Retrying in {wait_time:.1f}s..."
            )
            await sleep(wait_time)

    # Loop always returns or raises
    raise RuntimeError("Unexpected retry failure")


def retry_with_backoff(policy: RetryPolicy | None = None):
    """Decorator that retries async functions with exponential backoff."""
    if policy is None:
        policy = RetryPolicy()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await call_with_retry(func, *args, policy=policy, **kwargs)

        return wrapper

    return decorator


# Predefined policies
PLATFORM_TOKEN_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
