"""Retry with exponential backoff for calls to external collaborators.

Classification, OCR and marking all go over the network to Gemini. Transient
failures (rate limits, 5xx, dropped connections) are retried with jittered
exponential backoff; client errors fail immediately so the caller can isolate
the affected page or task.
"""

import asyncio
import functools
import inspect
import logging
import random
import time
from typing import Any, Callable, Set, Type, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# HTTP status codes that should trigger retry
RETRYABLE_STATUS_CODES: Set[int] = {
    408,  # Request timeout
    429,  # Rate limit
    500,  # Server error
    502,  # Bad gateway
    503,  # Service unavailable
    504,  # Gateway timeout
}

# HTTP status codes that should NOT trigger retry
NON_RETRYABLE_STATUS_CODES: Set[int] = {
    400,  # Bad request
    401,  # Unauthorized
    403,  # Forbidden
    404,  # Not found
    422,  # Unprocessable entity
}

NETWORK_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
)

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 1.0  # seconds
MAX_JITTER = 0.5  # seconds


def retry_with_backoff(
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_jitter: float = MAX_JITTER,
    retryable_exceptions: tuple[Type[Exception], ...] = (Exception,),
) -> Callable[[F], F]:
    """Decorator that retries a sync or async function with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Base delay in seconds, doubled on every attempt
        max_jitter: Maximum random jitter in seconds added to each delay
        retryable_exceptions: Exception types worth retrying when no status
            code or network marker decides the matter

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: F) -> F:
        def _next_delay(attempt: int, error: Exception) -> float | None:
            """Return the sleep before the next attempt, or None to give up."""
            if not _should_retry_exception(error, retryable_exceptions):
                return None
            if attempt >= max_retries:
                logger.error(f"{func.__name__} failed after {max_retries} retries: {error}")
                return None

            delay = (base_delay * (2**attempt)) + (random.random() * max_jitter)
            logger.warning(
                f"{func.__name__} attempt {attempt + 1}/{max_retries} failed: {error}. "
                f"Retrying in {delay:.2f}s..."
            )
            return delay

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    delay = _next_delay(attempt, e)
                    if delay is None:
                        raise
                    await asyncio.sleep(delay)
            raise RuntimeError("Unexpected retry loop exit")

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    delay = _next_delay(attempt, e)
                    if delay is None:
                        raise
                    time.sleep(delay)
            raise RuntimeError("Unexpected retry loop exit")

        if inspect.iscoroutinefunction(func):
            return cast(F, async_wrapper)
        return cast(F, sync_wrapper)

    return decorator


def _should_retry_exception(
    exception: Exception, retryable_exceptions: tuple[Type[Exception], ...]
) -> bool:
    """Determine if an exception should trigger a retry.

    A recognised status code decides first, then network-error wording in
    the message, then the exception type.
    """
    status_code = _extract_status_code(exception)

    if status_code:
        if status_code in NON_RETRYABLE_STATUS_CODES:
            return False
        if status_code in RETRYABLE_STATUS_CODES:
            return True

    message = str(exception).lower()
    if any(marker in message for marker in NETWORK_ERROR_MARKERS):
        return True

    return isinstance(exception, retryable_exceptions)


def _extract_status_code(exception: Exception) -> int | None:
    """Extract an HTTP status code from a google-genai or httpx style exception."""
    if hasattr(exception, "status_code"):
        try:
            return int(getattr(exception, "status_code"))
        except (TypeError, ValueError):
            return None

    # google.genai.errors.APIError exposes the HTTP status as `code`
    code = getattr(exception, "code", None)
    if isinstance(code, int):
        return code

    response = getattr(exception, "response", None)
    if response is not None and hasattr(response, "status_code"):
        try:
            return int(getattr(response, "status_code"))
        except (TypeError, ValueError):
            return None

    return None
