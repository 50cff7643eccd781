import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from dlmm_viewer.core.errors import RateLimitError, ResponseShapeError, ServiceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Returned by price lookups once retries are exhausted; never a real price
PRICE_SENTINEL = Decimal(-1)

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    httpx.TransportError,
    httpx.HTTPStatusError,
    ResponseShapeError,
    RateLimitError,
    ServiceUnavailableError,
)


def is_sentinel(price: Optional[Decimal]) -> bool:
    """True for prices that callers must treat as unknown."""
    return price is None or price < 0


def backoff_policy(
    max_attempts: int,
    base_delay: float,
    deadline: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
) -> AsyncRetrying:
    """
    Exponential backoff: the n-th retry waits base_delay * 2**n seconds.

    The optional deadline (seconds since the first attempt) is checked
    between attempts, so an in-flight request is never cut short.
    """
    stop = stop_after_attempt(max(1, max_attempts))
    if deadline is not None:
        stop = stop | stop_after_delay(deadline)
    return AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop,
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def fetch_with_retry(
    fetch: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    deadline: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
) -> T:
    """Run fetch with backoff; the last error propagates once attempts run out."""
    async for attempt in backoff_policy(max_attempts, base_delay, deadline, retry_on):
        with attempt:
            result = await fetch()
    return result


async def fetch_price_with_retry(
    fetch: Callable[[], Awaitable[Decimal]],
    *,
    description: str,
    max_attempts: int,
    base_delay: float,
    deadline: Optional[float] = None,
) -> Decimal:
    """Like fetch_with_retry but yields PRICE_SENTINEL instead of raising."""
    try:
        return await fetch_with_retry(
            fetch, max_attempts=max_attempts, base_delay=base_delay, deadline=deadline
        )
    except Exception as e:
        logger.error(f"Max retries ({max_attempts}) reached for {description}, returning sentinel: {e}")
        return PRICE_SENTINEL
