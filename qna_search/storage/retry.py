"""Tenacity retry policy for external calls.

Transient failures (connection errors, timeouts, throttling, 5xx) are retried
with exponential backoff up to a bounded number of attempts. Everything else
propagates on the first failure.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_retrying(attempts: int = 5, backoff: float = 0.5, max_backoff: float = 8.0) -> Retrying:
    """Return a Retrying controller that only retries TransientIOError."""
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=backoff, max=max_backoff),
        retry=retry_if_exception_type(TransientIOError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def call_with_retry(fn: Callable[..., T], *args, attempts: int = 5, backoff: float = 0.5, **kwargs) -> T:
    for attempt in build_retrying(attempts=attempts, backoff=backoff):
        with attempt:
            result = fn(*args, **kwargs)
    return result
