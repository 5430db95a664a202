from handoff.resilience.retry import RetryPolicy, compute_delay, retry
from handoff.resilience.breaker import (
    BreakerStatus,
    CircuitBreaker,
    CircuitBreakerState,
    FileBreakerStore,
    MemoryBreakerStore,
)
from handoff.resilience.guarded import ResilientCaller

__all__ = [
    "BreakerStatus",
    "CircuitBreaker",
    "CircuitBreakerState",
    "FileBreakerStore",
    "MemoryBreakerStore",
    "ResilientCaller",
    "RetryPolicy",
    "compute_delay",
    "retry",
]
