"""Retry wrapper for transient control-plane errors.

ARM answers 409 (another operation in progress on a parent), 429
(throttled) and 5xx under load. Those calls are retried with exponential
backoff and jitter; everything else propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})
JITTER_FRACTION = 0.2


def is_transient(error: BaseException) -> bool:
    """Return True for HTTP errors worth retrying."""
    if isinstance(error, ResourceNotFoundError):
        return False
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def backoff_seconds(attempt: int, base_seconds: float) -> float:
    """Exponential backoff with up to 20% jitter for a 1-based attempt."""
    backoff = base_seconds * (2 ** (attempt - 1))
    return backoff + random.uniform(0, backoff * JITTER_FRACTION)


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    description: str,
    attempts: int = 3,
    base_backoff_seconds: float = 5.0,
) -> T:
    """Await `call()`, retrying transient HTTP errors.

    The final attempt is made outside the retry loop, so its error
    propagates unchanged.

    Raises:
        HttpResponseError: The last error once all attempts are used, or
            the first non-transient error.
    """
    for attempt in range(1, attempts):
        try:
            return await call()
        except HttpResponseError as e:
            if not is_transient(e):
                raise

            wait_time = backoff_seconds(attempt, base_backoff_seconds)
            logger.warning(
                "Transient error, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "status_code": e.status_code,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(e),
                },
            )
            await asyncio.sleep(wait_time)

    return await call()
