"""Retry logic with exponential backoff for remote reads.

This module provides:
- retry_with_backoff: Simple exponential backoff retry
- is_transient: Whether a remote failure is worth retrying
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from remotesync.client.api import APIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 2
DEFAULT_INITIAL_BACKOFF = 0.5  # seconds
DEFAULT_MAX_BACKOFF = 8.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def is_transient(error: Exception) -> bool:
    """Check whether a failure may succeed on retry.

    Transport failures and 5xx answers are transient; other API errors
    (missing file, bad credentials) are not.
    """
    if isinstance(error, APIError):
        return error.status_code is None or error.status_code >= 500
    return isinstance(error, ConnectionError | TimeoutError)


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    should_retry: Callable[[Exception], bool] = is_transient,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        should_retry: Predicate deciding whether an exception is retried.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail or it is not retryable.
    """
    backoff = initial_backoff
    attempt = 0

    while True:
        try:
            return func()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                if attempt:
                    logger.error(f"All {max_retries} retries failed: {e}")
                raise

            attempt += 1
            logger.warning(
                f"Attempt {attempt}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            time.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)
