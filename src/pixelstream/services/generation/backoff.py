"""Exponential backoff with jitter for upstream generation retries."""

import random
from dataclasses import dataclass
from typing import Callable

JITTER_MIN = 0.75
JITTER_MAX = 1.25


@dataclass(frozen=True)
class RetryConfig:
    """Retry budget for one upstream call.

    max_retries counts retries, not attempts: 3 retries means up to 4 attempts.
    """

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0


def calculate_backoff_delay(
    attempt: int,
    base_delay_seconds: float = 2.0,
    max_delay_seconds: float = 30.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before retrying after a failed attempt.

    delay = min(max_delay, base * 2**attempt * jitter), jitter uniform in [0.75, 1.25].

    Args:
        attempt: Zero-based attempt number that just failed
        base_delay_seconds: Delay for attempt 0 before jitter
        max_delay_seconds: Upper bound for any delay
        rand: Source of uniform floats in [0, 1)

    Returns:
        Delay in seconds
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    exponential = base_delay_seconds * (2**attempt)
    jitter = JITTER_MIN + rand() * (JITTER_MAX - JITTER_MIN)
    return min(exponential * jitter, max_delay_seconds)
