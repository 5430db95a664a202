from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from handoff.errors import CircuitOpenError, RetryExhaustedError
from handoff.resilience.breaker import CircuitBreaker
from handoff.resilience.retry import RetryPolicy, retry

T = TypeVar("T")
CallEventHook = Callable[[dict[str, Any]], None]


class ResilientCaller:
    """Runs collaborator calls through a per-key circuit breaker inside bounded retries."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        policy: RetryPolicy,
        *,
        event_hook: CallEventHook | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.breaker = breaker
        self.policy = policy
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            payload = dict(event)
            payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
            self.event_hook(payload)

    def call(self, key: str, fn: Callable[[], T], *, description: str | None = None) -> T:
        label = description or key

        def _on_retry(attempt: int, delay: float, error: BaseException) -> None:
            self._emit(
                {
                    "event": "call_retry",
                    "key": key,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(error),
                }
            )

        try:
            result = retry(
                lambda: self.breaker.call(key, fn),
                self.policy,
                description=label,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except CircuitOpenError as exc:
            self._emit({"event": "call_short_circuited", "key": key, "error": str(exc)})
            raise
        except RetryExhaustedError as exc:
            self._emit(
                {
                    "event": "call_exhausted",
                    "key": key,
                    "attempts": exc.attempts,
                    "error": str(exc.last_error),
                }
            )
            raise
        self._emit({"event": "call_succeeded", "key": key})
        return result
