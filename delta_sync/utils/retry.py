"""Retry utilities with exponential backoff."""

import time
from typing import Callable, Tuple, Type, TypeVar

import structlog

log = structlog.stdlib.get_logger()

T = TypeVar("T")


class RetryCancelled(Exception):
    """Raised when the wait between attempts reports cancellation."""

    pass


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> float:
    """
    Compute the delay before the next attempt.

    Args:
        attempt: Zero-based attempt number that just failed
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        multiplier: Growth factor between consecutive delays

    Returns:
        Delay in seconds, never above max_delay
    """
    return min(base_delay * (multiplier**attempt), max_delay)


def retry_call(
    func: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] | None = None,
    delay_hint: Callable[[Exception], float | None] | None = None,
    wait: Callable[[float], bool | None] = time.sleep,
) -> T:
    """
    Call func, retrying with exponential backoff on selected exceptions.

    Args:
        func: Zero-argument callable to invoke
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exceptions: Tuple of exception types to catch and retry
        should_retry: Optional predicate; exceptions it rejects are re-raised at once
        delay_hint: Optional server-provided delay (e.g. Retry-After), capped at max_delay
        wait: Function used to sleep between attempts; a True return means the
            caller was cancelled during the wait and no further attempt is made

    Returns:
        Whatever func returns

    Raises:
        The last exception once retries are exhausted, or any non-retryable one
        RetryCancelled: If wait reports cancellation; chained to the last error
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_retries + 1):
        try:
            return func()
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise

            if attempt == max_retries:
                log.error(
                    "max_retries_reached",
                    function=name,
                    max_retries=max_retries,
                    error=str(e),
                )
                raise

            delay = compute_backoff_delay(attempt, base_delay, max_delay)
            hinted = delay_hint(e) if delay_hint is not None else None
            if hinted is not None:
                delay = min(max(hinted, delay), max_delay)

            log.warning(
                "retrying_after_error",
                function=name,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay_seconds=delay,
                error=str(e),
            )

            if wait(delay):
                log.info("retry_cancelled", function=name, attempt=attempt + 1)
                raise RetryCancelled(f"Retry of {name} cancelled") from e

    raise AssertionError("unreachable")
