"""Retry policies for calls across the persistence boundary.

Only transient transport failures are retried. Answers from the record
service (404, 403, validation errors) are final and propagate immediately.
"""

import logging
from typing import Callable, Tuple, Type, TypeVar

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (httpx.TransportError,)


# Standard retry policy for record reads
# - Wait 2^x * 0.2 seconds between retries, capped at 2s
# - Stop after 3 attempts; reads sit on the page-load path
# - Re-raise the last transport error if all retries fail
record_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def create_custom_retry(
    max_attempts: int = 3,
    min_wait: float = 0.2,
    max_wait: float = 2,
    multiplier: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Create a retry decorator with specific parameters.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        multiplier: Exponential backoff multiplier
        retry_on: Exception types that trigger a retry

    Returns:
        A retry decorator configured with the specified parameters

    Example:
        ```python
        # Writes are not idempotent on every backend: try once more at most
        write_retry = create_custom_retry(max_attempts=2)

        @write_retry
        async def patch_record():
            ...
        ```
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
