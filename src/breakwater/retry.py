"""Caller-side retries layered above ``CircuitBreaker.execute``.

Breakers never retry on their own. Callers that want retries wrap ``execute``
with these helpers, which stop as soon as the circuit rejects a call: retrying
against an open circuit only burns the backoff budget.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base

from breakwater.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    FallbackError,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and backoff boundaries."""

    attempts: int | None
    min_seconds: float
    max_seconds: float

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (CircuitOpenError, FallbackError))


retry_unless_circuit_open = retry_if_exception(_is_retryable)
"""Retry any failure except a rejected call or a failed fallback."""


def build_exponential_jitter_retrying(
    *,
    policy: RetryBackoffPolicy,
    retry: retry_base = retry_unless_circuit_open,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff."""
    stop = (
        stop_never if policy.attempts is None else stop_after_attempt(policy.attempts)
    )
    wait = wait_exponential_jitter(
        initial=policy.min_seconds,
        max=policy.max_seconds,
    )
    options: dict[str, object] = {}
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(
        retry=retry,
        wait=wait,
        stop=stop,
        reraise=reraise,
        **options,
    )


async def execute_with_retry(
    breaker: CircuitBreaker,
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` through ``breaker``, retrying failures per ``policy``.

    Each attempt is one independent ``execute`` call, so every attempt is
    admitted (and counted) by the breaker on its own.
    """
    retrying = build_exponential_jitter_retrying(policy=policy, sleep=sleep)
    return await retrying(breaker.execute, operation)
