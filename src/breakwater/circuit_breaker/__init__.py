"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - Each named breaker is an independent state machine. Sharing a breaker
    between call sites goes through an explicitly owned
    ``CircuitBreakerRegistry``; there is no process-wide registry.
  - Half-open probing is conservative: exactly one trial call is admitted per
    half-open period. Every other call is rejected, not queued.
  - ``failure_count`` is reset on entering ``HALF_OPEN``. A failed trial counts
    one failure before the circuit reopens.
  - Outcomes of calls admitted in an earlier state period (for example a slow
    call admitted while ``CLOSED`` that completes after the circuit opened) do
    not change the state.
  - The breaker never retries. ``breakwater.retry`` layers retries on top.
"""

from breakwater.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from breakwater.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    FallbackError,
    OperationTimeoutError,
)
from breakwater.circuit_breaker.notifications import (
    InMemoryNotificationSink,
    NotificationSink,
    build_payload,
)
from breakwater.circuit_breaker.registry import CircuitBreakerRegistry
from breakwater.circuit_breaker.state import BreakerSnapshot, CircuitState
from breakwater.circuit_breaker.timers import (
    AsyncioTimerService,
    TimerHandle,
    TimerService,
)

__all__ = [
    "AsyncioTimerService",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "FallbackError",
    "InMemoryNotificationSink",
    "NotificationSink",
    "OperationTimeoutError",
    "TimerHandle",
    "TimerService",
    "build_payload",
]
