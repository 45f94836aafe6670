"""Retry helpers shared by image uploads and bulk commit chunks."""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


def exponential_delay(attempt: int, base: float, factor: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, base*factor, ..."""
    return base * (factor ** (attempt - 1))


def capped_linear_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): min(base*attempt, cap)."""
    return min(base * attempt, cap)


def retry_call(
    fn: Callable[[], R],
    *,
    attempts: int,
    delay_for: Callable[[int], float],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> R:
    """
    Call ``fn`` up to ``attempts`` times, sleeping ``delay_for(n)`` after the
    n-th failure. The last exception is re-raised once attempts run out.

    Args:
        fn: Zero-argument callable to run
        attempts: Total number of tries (at least 1)
        delay_for: Maps the failed attempt number to a delay in seconds
        retry_on: Exception types that trigger another attempt
        label: Name used in log lines
        sleep: Injected for tests

    Returns:
        Whatever ``fn`` returns on the first successful try
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning("%s failed after %d attempt(s): %s", label, attempt, e)
                raise
            delay = delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                delay,
                e,
            )
            sleep(delay)
    raise AssertionError("unreachable")
