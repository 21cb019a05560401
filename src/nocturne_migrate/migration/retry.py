"""Retry helper with capped exponential backoff for transient store errors."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from ..config.config import RetryPolicy
from ..errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """True for errors worth retrying: adapter-flagged transients, dropped sockets, timeouts."""
    return isinstance(exc, (TransientStoreError, ConnectionError, asyncio.TimeoutError, TimeoutError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` and retry it on transient errors.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        policy: Retry limits and backoff constants
        description: Used in log messages
        is_transient: Predicate selecting retryable exceptions
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The last exception once retries are exhausted, or any non-transient
        exception immediately.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            logger.warning(
                f"{description} failed ({type(e).__name__}: {e}); "
                f"retry {attempt}/{policy.max_retries} in {delay:.1f}s"
            )
            await sleep(delay)
