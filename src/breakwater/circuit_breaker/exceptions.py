"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open (or the half-open trial
    slot is taken).
  - An admitted call exceeding its deadline.
  - A fallback computation failing.

Failures raised by the protected operation itself are re-raised unchanged.
"""

from breakwater.circuit_breaker.state import CircuitState


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised when a call is rejected without running the operation.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        state: Breaker state at rejection time.
        retry_after: Seconds until a half-open trial may be attempted, ``0.0``
            when a trial is already in flight, ``None`` when automatic reset
            is disabled.
    """

    def __init__(
        self,
        breaker_name: str,
        *,
        state: CircuitState = CircuitState.OPEN,
        retry_after: float | None = None,
    ) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_name: Breaker rejecting the call.
            state: State that caused the rejection.
            retry_after: Seconds until the next trial window opens.
        """
        self.breaker_name = breaker_name
        self.state = state
        self.retry_after = retry_after
        window = "never" if retry_after is None else f"{retry_after:g}s"
        super().__init__(
            f"circuit_open: {breaker_name} state={state} retry_after={window}"
        )


class OperationTimeoutError(CircuitBreakerError, TimeoutError):
    """Raised when an admitted call does not complete before its deadline."""

    def __init__(self, breaker_name: str, timeout: float) -> None:
        self.breaker_name = breaker_name
        self.timeout = timeout
        super().__init__(f"operation_timeout: {breaker_name} timeout={timeout:g}s")


class FallbackError(CircuitBreakerError):
    """Raised when the fallback computation itself fails.

    The fallback's own exception is chained as ``__cause__``.

    Attributes:
        breaker_name: Name of the breaker that invoked the fallback.
        trigger: Exception the fallback was invoked with.
    """

    def __init__(self, breaker_name: str, trigger: BaseException) -> None:
        self.breaker_name = breaker_name
        self.trigger = trigger
        super().__init__(
            f"fallback_failed: {breaker_name} trigger={trigger.__class__.__name__}"
        )
