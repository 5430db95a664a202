from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from handoff.config import RetryConfig
from handoff.errors import HandoffError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
RetryHook = Callable[[int, float, BaseException], None]


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(config.max_attempts)),
            base_delay_seconds=max(0.0, float(config.base_delay_seconds)),
            max_delay_seconds=max(0.0, float(config.max_delay_seconds)),
        )


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay after failed attempt ``attempt`` (1-based): exponential plus jitter, capped."""
    exponential = policy.base_delay_seconds * (2 ** (max(1, attempt) - 1))
    jitter = rng() * policy.base_delay_seconds
    return min(policy.max_delay_seconds, exponential + jitter)


def retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    on_retry: RetryHook | None = None,
) -> T:
    last_error: BaseException | None = None
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except HandoffError as exc:
            if not exc.retriable:
                raise
            last_error = exc
        except Exception as exc:
            last_error = exc

        if attempt == attempts:
            break
        delay = compute_delay(attempt, policy, rng)
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.2fs",
            description,
            attempt,
            attempts,
            last_error,
            delay,
        )
        if on_retry:
            on_retry(attempt, delay, last_error)
        sleep(delay)

    logger.error("%s failed after %d attempt(s): %s", description, attempts, last_error)
    raise RetryExhaustedError(description, attempts, last_error) from last_error
