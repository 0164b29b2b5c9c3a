"""Retry envelope with exponential backoff and jitter around agent invocations."""

import logging
import random
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from agent_fleet.core.cancel import CancelToken, RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS = [
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"rate_limit", re.IGNORECASE),
    re.compile(r"hit your limit", re.IGNORECASE),
    re.compile(r"quota", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"timeout", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"connection", re.IGNORECASE),
    re.compile(r"ECONNRESET"),
    re.compile(r"ETIMEDOUT"),
    re.compile(r"ENOTFOUND"),
    re.compile(r"overloaded", re.IGNORECASE),
]


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 5.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: bool = True
    exponential: bool = True


def calculate_backoff_delay(attempt: int, base_ms: int, max_ms: int, jitter: bool = True) -> int:
    """Delay in milliseconds before retry number `attempt` (1-based).

    min(max_ms, base_ms * 2^(attempt-1)), then up to 25% extra when jitter
    is on, floored.
    """
    delay = min(max_ms, base_ms * (2 ** (attempt - 1)))
    if jitter:
        delay += random.random() * delay * 0.25
    return int(delay)


def is_retryable_error(message: str) -> bool:
    return any(pattern.search(message) for pattern in RETRYABLE_PATTERNS)


def next_delay_ms(policy: RetryPolicy, attempt: int) -> int:
    base_ms = int(policy.base_delay * 1000)
    if not policy.exponential:
        return base_ms
    return calculate_backoff_delay(attempt, base_ms, int(policy.max_delay * 1000), policy.jitter)


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    on_retry: Callable[[int, str, int], None] | None = None,
    cancel: CancelToken | None = None,
) -> T:
    """Run operation, retrying on any exception up to policy.max_attempts.

    The last error is re-raised once attempts are exhausted. RunCancelled is
    never retried.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        if cancel:
            cancel.raise_if_cancelled()
        try:
            return operation()
        except RunCancelled:
            raise
        except Exception as e:
            if attempt >= attempts:
                raise
            delay = next_delay_ms(policy, attempt)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1fs", attempt, attempts, e, delay / 1000
            )
            if on_retry:
                on_retry(attempt, str(e), delay)
            if cancel:
                if cancel.wait(delay / 1000):
                    raise RunCancelled(cancel.reason or "cancelled") from e
            elif delay:
                time.sleep(delay / 1000)
    raise AssertionError("unreachable")
