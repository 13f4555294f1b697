"""Retry policy for artifact downloads and other transient failures.

Transport errors and server-side HTTP statuses (5xx, 429) are retried with
exponential backoff. Any other HTTP status is a definitive answer and
propagates on the first attempt.
"""
import logging
from functools import partial
from typing import Callable

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

RETRYABLE_EXCEPTIONS = (
    httpx.TransportError,
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_transient(exc: BaseException, exceptions: tuple = RETRYABLE_EXCEPTIONS) -> bool:
    """True if a failed call is worth repeating."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, exceptions)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory retrying transient failures.

    Works on sync and async functions alike; tenacity picks the matching
    retry loop for coroutine functions.

    Args:
        max_attempts: Attempts in total, the first call included
        min_wait: Minimum backoff between attempts (seconds)
        max_wait: Maximum backoff between attempts (seconds)
        exceptions: Exception types treated as transient besides retryable HTTP statuses
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception(partial(is_transient, exceptions=exceptions)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
