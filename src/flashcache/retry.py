"""Retry with exponential backoff for retryable failure categories."""

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from flashcache.errors import classify_exception, recovery_for, RecoveryStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


def is_retryable(exc: BaseException) -> bool:
    """True when the exception's category maps to the RETRY strategy."""
    return recovery_for(classify_exception(exc)) is RecoveryStrategy.RETRY


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Delay before retry number ``attempt + 1`` (attempt counts from 0).

    Examples:
        >>> [backoff_delay(a) for a in range(5)]
        [1.0, 2.0, 4.0, 8.0, 10.0]
    """
    return min(base_delay * (2**attempt), max_delay)


def retry_call(
    operation: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    sleep: Callable[[float], Any] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """Run ``operation`` with retries.

    The operation runs at most ``max_retries + 1`` times. Only retryable
    failures (network, cloud resource, process timeout) are retried;
    anything else propagates immediately. After the last attempt the last
    error propagates.

    Args:
        operation: Zero-argument callable
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, doubled each time
        max_delay: Upper bound for a single delay
        sleep: Sleep function (injectable for tests)
        description: Name used in log messages

    Returns:
        Result of the first successful attempt
    """
    name = description or getattr(operation, "__name__", "operation")
    max_retries = max(0, max_retries)

    for attempt in range(max_retries + 1):
        try:
            result = operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt == max_retries:
                logger.error(
                    f"{name} failed after {max_retries} retries: {e}",
                    extra={"operation": name, "max_retries": max_retries},
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{name} failed, retry {attempt + 1}/{max_retries} in {delay:.1f}s: {e}",
                extra={
                    "operation": name,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                },
            )
            sleep(delay)
            continue

        if attempt > 0:
            logger.info(f"{name} succeeded after {attempt} retries")
        return result

    raise RuntimeError(f"{name} was never attempted")


def retry_with_backoff(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """Decorator form of :func:`retry_call`.

    Example:
        @retry_with_backoff(max_retries=3)
        def fetch():
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_call(
                lambda: func(*args, **kwargs),
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                description=func.__name__,
            )

        return wrapper

    return decorator
