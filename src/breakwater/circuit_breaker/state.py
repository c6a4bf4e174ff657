"""Circuit breaker state primitives."""

from dataclasses import dataclass
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for notifications/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failure_count: Consecutive failures counted since the last reset.
        opened_at: Monotonic timestamp when the breaker entered ``OPEN``, if open.
    """

    name: str
    state: CircuitState
    failure_count: int
    opened_at: float | None


@dataclass(frozen=True)
class Transition:
    """One state change, with the snapshot taken right after it."""

    old: CircuitState
    new: CircuitState
    snapshot: BreakerSnapshot


@dataclass(frozen=True)
class Admission:
    """Ticket handed to an admitted call.

    ``epoch`` ties the eventual outcome to the state period the call was admitted
    in; outcomes from an earlier period are ignored.
    """

    epoch: int
    trial: bool
