"""
Retry utilities with exponential backoff for API calls.

Used by the Shopify fetcher for transient transport and 5xx failures.
HTTP 429 is never retried here; callers stop their batch instead.
"""
import asyncio
import functools
import random
from typing import Callable, Tuple, Type
from shopmirror.utils.logger import log


# Default retryable exceptions (network errors)
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)

DEFAULT_RETRYABLE_STATUS_CODES: Tuple[int, ...] = (500, 502, 503, 504)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add 0-25% randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    retryable_status_codes: Tuple[int, ...] = DEFAULT_RETRYABLE_STATUS_CODES
) -> bool:
    """
    Check if an error is retryable.

    Errors carrying an HTTP status_code are judged on the code alone, so a
    429 is never retried even if its message mentions a timeout.
    """
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        return status_code in retryable_status_codes

    if isinstance(error, retryable_exceptions):
        return True

    error_str = str(error).lower()

    if "timeout" in error_str or "timed out" in error_str:
        return True

    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True

    return False


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS
):
    """
    Async decorator for retrying operations with exponential backoff.

    Usage:
        @retry_async(max_attempts=3)
        async def fetch_api_data():
            ...
    """
    def decorator(func: Callable):

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 1:
                        log.info(f"{func.__name__} succeeded on attempt {attempt}")
                    return result

                except Exception as e:
                    if attempt >= max_attempts or not is_retryable_error(e, retryable_exceptions):
                        if attempt > 1:
                            log.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                        raise

                    delay = calculate_backoff(
                        attempt,
                        base_delay=base_delay,
                        max_delay=max_delay,
                        exponential_base=exponential_base
                    )
                    log.warning(
                        f"{func.__name__} attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry exhausted")

        return wrapper

    return decorator
