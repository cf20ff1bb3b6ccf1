"""Exponential-backoff retry for awaitable operations.

The delay before attempt *k* (k >= 1, the first call being attempt 0) is
``base_delay * 2 ** (k - 1)``.  The final attempt is never followed by a
sleep; its error propagates to the caller.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """How many times to retry and how long to wait before the first retry.

    Args:
        max_retries: Retries after the initial attempt (total calls = max_retries + 1).
        base_delay:  Seconds to wait before the first retry; doubles each time.
    """

    def __init__(self, max_retries: int, base_delay: float):
        self.max_retries = max_retries
        self.base_delay = base_delay

    def delay(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based retry number)."""
        return self.base_delay * (2 ** (attempt - 1))

    def __repr__(self):
        return f"RetryPolicy(max_retries={self.max_retries}, base_delay={self.base_delay})"


TOKEN_RETRY = RetryPolicy(max_retries=2, base_delay=2.0)
SEARCH_RETRY = RetryPolicy(max_retries=3, base_delay=2.0)
FALLBACK_RETRY = RetryPolicy(max_retries=2, base_delay=1.0)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn`` until it succeeds or ``max_retries + 1`` attempts have failed.

    Raises:
        Exception: whatever the last attempt raised.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries:
                raise
            attempt += 1
            delay = RetryPolicy(max_retries, base_delay).delay(attempt)
            logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                           label, attempt, max_retries + 1, delay, exc)
            await sleep(delay)


async def retry_with_policy(
    policy: RetryPolicy,
    fn: Callable[[], Awaitable[T]],
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    return await with_retry(fn, policy.max_retries, policy.base_delay, label=label, sleep=sleep)
