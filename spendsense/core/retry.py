"""Bounded retry for rate-limited provider calls (tenacity)."""

import asyncio

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from spendsense.core.exceptions import ProviderRateLimitedError

logger = structlog.get_logger()


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "provider_rate_limited_retrying",
        provider=getattr(error, "provider", None),
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


def rate_limit_retrying(max_retries: int, base_delay: float, sleep=asyncio.sleep) -> AsyncRetrying:
    """Retry ProviderRateLimitedError ``max_retries`` times, waiting attempt * base_delay.

    With the default 2s base the waits are 2s, 4s, then 6s. ``sleep`` is the
    coroutine tenacity awaits between attempts.

    Usage::

        async for attempt in rate_limit_retrying(3, 2.0):
            with attempt:
                response = await provider.complete(...)

    Any other exception propagates on the first attempt; the last rate-limit
    error is re-raised once retries are exhausted.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(ProviderRateLimitedError),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_incrementing(start=base_delay, increment=base_delay),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
