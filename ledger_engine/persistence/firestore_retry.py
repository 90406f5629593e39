"""
Bounded retry for blocking Firestore SDK calls.

Only errors the backend documents as retryable are retried. When the attempts
run out, the error is surfaced as `StoreUnavailableError`, which is the signal
the transaction store façade uses to switch to its local cache.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from google.api_core import exceptions as gexc

from ledger_engine.common.errors import StoreUnavailableError
from ledger_engine.common.logging import log_event

T = TypeVar("T")
logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def backoff_delay_s(attempt: int, *, base_delay_s: float, max_delay_s: float) -> float:
    """Full-jitter delay before retry number `attempt` (0-based)."""
    ceiling = min(max_delay_s, base_delay_s * (2**attempt))
    return random.uniform(0.0, ceiling)


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 4,
    base_delay_s: float = 0.2,
    max_delay_s: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn` up to `max_attempts` times. Blocks; run it via `asyncio.to_thread`.
    Errors outside RETRYABLE_ERRORS propagate on the first occurrence.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(attempts):
        try:
            return fn()
        except RETRYABLE_ERRORS as e:
            if attempt + 1 >= attempts:
                raise StoreUnavailableError(f"firestore unavailable after {attempts} attempts: {e}") from e
            delay = backoff_delay_s(attempt, base_delay_s=base_delay_s, max_delay_s=max_delay_s)
            log_event(
                logger,
                "firestore.retry",
                severity="DEBUG",
                attempt=attempt + 1,
                delay_s=round(delay, 3),
                error_type=type(e).__name__,
            )
            sleep(delay)
    raise AssertionError("unreachable")
