# taskrelay/retry.py
import math
import random
from typing import Optional

from .common.definition import RetryConfig

JITTER_RANGE = 0.3


def calculate_backoff(attempt: int, config: Optional[RetryConfig] = None) -> int:
    """Delay in milliseconds before a task that failed ``attempt`` times runs again.

    The strategy's delay is capped at ``max_delay_ms`` and then stretched by a
    random 0-30% so that retries of a burst of failures spread out.
    """
    config = config or RetryConfig()
    base = config.initial_delay_ms
    cap = config.max_delay_ms
    attempt = max(attempt, 1)

    if config.backoff == "linear":
        delay = min(base * attempt, cap)
    elif config.backoff == "fixed":
        delay = base
    else:
        # Past ~1024 doublings the float overflows; the cap wins long before
        exponent = min(attempt - 1, 1023)
        delay = min(base * math.pow(2, exponent), cap)

    return math.floor(delay * (1.0 + random.random() * JITTER_RANGE))


def should_retry(
    error: BaseException,
    attempt: int,
    max_attempts: int,
    config: Optional[RetryConfig] = None,
) -> bool:
    if attempt >= max_attempts:
        return False
    if config is not None and config.retry_on is not None:
        return bool(config.retry_on(error))
    return True
