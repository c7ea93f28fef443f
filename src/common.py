"""Common utilities for the reconciliation driver."""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(attempt: int, base: float = 1.0, maximum: float = 30.0) -> float:
    """Exponential backoff delay before retry number `attempt` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(maximum, base * (2 ** (attempt - 1)))


def retry_call(
    fn: Callable[[], T],
    retry_on: tuple[type[BaseException], ...],
    attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    description: str = 'call',
    on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
    """Call fn, retrying with exponential backoff on the given exceptions.

    Any other exception propagates immediately. After the last attempt the
    retryable exception propagates too.

    Args:
        fn: Zero-argument callable
        retry_on: Exception types that trigger a retry
        attempts: Total attempts including the first
        base_delay: Delay before the first retry (doubles each time)
        max_delay: Upper bound for a single delay
        sleep: Sleep function (injectable for tests)
        description: Label for log messages
        on_attempt: Called with the attempt number before each attempt
    """
    for attempt in range(1, attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.debug(f"{description} failed after {attempts} attempts")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug("%s attempt %d/%d failed (%s), retrying in %.1fs...",
                         description, attempt, attempts, type(e).__name__, delay)
            sleep(delay)
    raise ValueError(f"attempts must be >= 1, got {attempts}")


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration for tables ('-' when unknown)."""
    if seconds is None:
        return '-'
    return f'{seconds:.1f}s'
