"""Retry with exponential backoff for tracker reads.

Only idempotent reads go through here. Mutations are attempted once; a
failed mutation surfaces as ExternalOperationError and blocks the session.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Sequence, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFunc = Callable[[float], None]


def compute_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    Jitter scales the delay to 50-150% of its nominal value.
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + (rng or random).random()
    return delay


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Sequence[Type[Exception]]] = None,
    rng: Optional[random.Random] = None,
    sleep_func: Optional[SleepFunc] = None,
    description: str = "operation",
) -> T:
    """Call func, retrying on failure with increasing delays.

    Args:
        func: Zero-argument callable (use a lambda for arguments).
        max_retries: Retries after the first attempt (default 3).
        base_delay: Initial delay in seconds.
        max_delay: Cap on a single delay in seconds.
        exponential_base: Multiplier per retry.
        jitter: Randomize delays to 50-150% of nominal.
        retryable_exceptions: Exceptions to retry on (default: all).
        rng: Injectable Random for deterministic tests.
        sleep_func: Injectable sleep for tests.
        description: Label used in log messages.

    Returns:
        Result from func on success.

    Raises:
        Exception: The last exception once retries are exhausted.

    Example:
        >>> state = retry_with_backoff(lambda: tracker.fetch_snapshot(ref),
        ...                            max_retries=2, sleep_func=lambda s: None)
    """
    retryable = tuple(retryable_exceptions or (Exception,))
    _rng = rng or random.Random()
    _sleep = sleep_func or time.sleep
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retryable as e:
            last_exception = e
            if attempt == max_retries:
                break
            delay = compute_delay(attempt, base_delay, max_delay, exponential_base, jitter, _rng)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt + 1,
                max_retries + 1,
                e,
                delay,
            )
            _sleep(delay)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError("retry_with_backoff: unexpected state")
