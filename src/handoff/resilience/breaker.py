"""Per-key circuit breaker with pluggable state persistence.

The breaker has three states:
- CLOSED: calls run, consecutive failures are counted
- OPEN: calls fail fast with CircuitOpenError until the cooldown elapses
- HALF_OPEN: a single probe call is in flight; its outcome closes or reopens
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, TypeVar

from handoff.errors import CircuitOpenError
from handoff.state.atomic import AtomicFileStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerStatus(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreakerState:
    failure_count: int = 0
    state: BreakerStatus = BreakerStatus.CLOSED
    opened_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_count": self.failure_count,
            "state": self.state.value,
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CircuitBreakerState:
        if not isinstance(payload, dict):
            return cls()
        try:
            status = BreakerStatus(str(payload.get("state", BreakerStatus.CLOSED.value)))
        except ValueError:
            status = BreakerStatus.CLOSED
        opened_at = payload.get("opened_at")
        return cls(
            failure_count=int(payload.get("failure_count") or 0),
            state=status,
            opened_at=float(opened_at) if isinstance(opened_at, (int, float)) else None,
        )


StateUpdater = Callable[[CircuitBreakerState], CircuitBreakerState]


class BreakerStore(Protocol):
    def load(self, key: str) -> CircuitBreakerState: ...

    def update(self, key: str, updater: StateUpdater) -> CircuitBreakerState: ...

    def all(self) -> dict[str, CircuitBreakerState]: ...


class MemoryBreakerStore:
    def __init__(self) -> None:
        self._states: dict[str, CircuitBreakerState] = {}

    def load(self, key: str) -> CircuitBreakerState:
        stored = self._states.get(key)
        return CircuitBreakerState.from_dict(stored.to_dict() if stored else None)

    def update(self, key: str, updater: StateUpdater) -> CircuitBreakerState:
        updated = updater(self.load(key))
        self._states[key] = updated
        return updated

    def all(self) -> dict[str, CircuitBreakerState]:
        return {key: self.load(key) for key in sorted(self._states)}


class FileBreakerStore:
    """Breaker states kept in one JSON document so they survive separate invocations."""

    def __init__(self, store: AtomicFileStore, path: str = "breakers.json") -> None:
        self.store = store
        self.path = path

    def _document(self) -> dict[str, Any]:
        entry = self.store.read_entry(self.path)
        if entry is None:
            return {}
        try:
            payload = json.loads(entry.content)
        except json.JSONDecodeError:
            return {}
        return payload if isinstance(payload, dict) else {}

    def load(self, key: str) -> CircuitBreakerState:
        return CircuitBreakerState.from_dict(self._document().get(key))

    def update(self, key: str, updater: StateUpdater) -> CircuitBreakerState:
        result: dict[str, CircuitBreakerState] = {}

        def _apply(document: Any) -> dict[str, Any]:
            payload = document if isinstance(document, dict) else {}
            updated = updater(CircuitBreakerState.from_dict(payload.get(key)))
            payload[key] = updated.to_dict()
            result["state"] = updated
            return payload

        self.store.update_json(self.path, _apply, default={})
        return result["state"]

    def all(self) -> dict[str, CircuitBreakerState]:
        document = self._document()
        return {key: CircuitBreakerState.from_dict(document[key]) for key in sorted(document)}


class CircuitBreaker:
    def __init__(
        self,
        *,
        threshold: int = 3,
        cooldown_seconds: float = 60.0,
        store: BreakerStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.threshold = max(1, threshold)
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self.store: BreakerStore = store or MemoryBreakerStore()
        self._clock = clock

    def state(self, key: str) -> CircuitBreakerState:
        return self.store.load(key)

    def states(self) -> dict[str, CircuitBreakerState]:
        return self.store.all()

    def _cooling(self, current: CircuitBreakerState) -> bool:
        if current.state == BreakerStatus.CLOSED or current.opened_at is None:
            return False
        return self._clock() - current.opened_at < self.cooldown_seconds

    def is_open(self, key: str) -> bool:
        return self._cooling(self.state(key))

    def reset(self, key: str) -> CircuitBreakerState:
        return self.store.update(key, lambda _: CircuitBreakerState())

    def _admit(self, key: str) -> None:
        if self.store.load(key).state == BreakerStatus.CLOSED:
            return

        def _updater(current: CircuitBreakerState) -> CircuitBreakerState:
            if current.state == BreakerStatus.CLOSED:
                return current
            now = self._clock()
            elapsed = now - (current.opened_at if current.opened_at is not None else now)
            if elapsed < self.cooldown_seconds:
                raise CircuitOpenError(key, self.cooldown_seconds - elapsed)
            if current.state == BreakerStatus.OPEN:
                logger.info("Circuit %s half-open; allowing one probe call", key)
            else:
                logger.warning("Circuit %s probe claim expired; allowing a new probe", key)
            current.state = BreakerStatus.HALF_OPEN
            current.opened_at = now
            return current

        self.store.update(key, _updater)

    def record_failure(self, key: str) -> CircuitBreakerState:
        def _updater(current: CircuitBreakerState) -> CircuitBreakerState:
            current.failure_count += 1
            if current.state == BreakerStatus.HALF_OPEN:
                logger.warning("Circuit %s probe failed; reopening", key)
                current.state = BreakerStatus.OPEN
                current.opened_at = self._clock()
            elif current.state == BreakerStatus.OPEN and not self._cooling(current):
                logger.warning("Circuit %s failed again after cooldown; reopening", key)
                current.opened_at = self._clock()
            elif current.state == BreakerStatus.CLOSED and current.failure_count >= self.threshold:
                logger.error(
                    "Circuit %s opened after %d consecutive failures",
                    key,
                    current.failure_count,
                )
                current.state = BreakerStatus.OPEN
                current.opened_at = self._clock()
            return current

        return self.store.update(key, _updater)

    def record_success(self, key: str) -> CircuitBreakerState:
        current = self.store.load(key)
        if current.state == BreakerStatus.CLOSED and current.failure_count == 0:
            return current
        if current.state == BreakerStatus.HALF_OPEN:
            logger.info("Circuit %s closed after successful probe", key)
        return self.store.update(key, lambda _: CircuitBreakerState())

    def call(self, key: str, fn: Callable[[], T]) -> T:
        self._admit(key)
        try:
            result = fn()
        except Exception:
            self.record_failure(key)
            raise
        self.record_success(key)
        return result
