"""Circuit state machine.

The machine owns the breaker state, the consecutive failure counter, the
half-open trial slot and the reset timer. Every read-modify-write happens in
one synchronous critical section, so concurrent admission decisions never see
a torn state and at most one half-open trial is granted.

Transitions are reported through ``on_transition`` after the critical section
is left, in the order they happened.
"""

import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import partial

from breakwater.circuit_breaker.state import (
    Admission,
    BreakerSnapshot,
    CircuitState,
    Transition,
)
from breakwater.circuit_breaker.timers import TimerHandle, TimerService


class _StateGuard:
    """Critical section for state bookkeeping.

    Under the GIL the event loop already serializes the (await-free) sections;
    free-threaded interpreters get a real thread lock.
    """

    def __init__(self) -> None:
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()

    @contextmanager
    def held(self) -> Iterator[None]:
        if self._thread_lock is None:
            yield
            return
        with self._thread_lock:
            yield


class CircuitStateMachine:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN bookkeeping for one breaker."""

    def __init__(
        self,
        name: str,
        *,
        max_failures: int,
        reset_timeout: float,
        timers: TimerService,
        on_transition: Callable[[Transition], None],
    ) -> None:
        """Create a machine in the ``CLOSED`` state with no failures.

        Args:
            name: Breaker name reported in snapshots.
            max_failures: Consecutive failures that open the circuit.
            reset_timeout: Seconds spent ``OPEN`` before the half-open trial;
                negative disables automatic reset.
            timers: Timer service used for reset scheduling.
            on_transition: Called once per state change, outside the lock.
        """
        self.name = name
        self._max_failures = max_failures
        self._reset_timeout = reset_timeout
        self._timers = timers
        self._on_transition = on_transition
        self._guard = _StateGuard()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._epoch = 0
        self._trial_taken = False
        self._reset_timer: TimerHandle | None = None
        self._disposed = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def snapshot(self) -> BreakerSnapshot:
        with self._guard.held():
            return self._snapshot()

    def try_admit(self) -> Admission | None:
        """Return an admission ticket, or ``None`` when the call must be blocked."""
        with self._guard.held():
            if self._state == CircuitState.CLOSED:
                return Admission(epoch=self._epoch, trial=False)
            if self._state == CircuitState.HALF_OPEN and not self._trial_taken:
                self._trial_taken = True
                return Admission(epoch=self._epoch, trial=True)
            return None

    def retry_after(self) -> float | None:
        """Seconds until the next trial may be admitted.

        ``None`` means the circuit only recovers through a manual reset.
        """
        with self._guard.held():
            if self._state != CircuitState.OPEN:
                return 0.0
            if self._reset_timeout < 0 or self._disposed:
                return None
            now = self._timers.monotonic()
            opened_at = now if self._opened_at is None else self._opened_at
            return max(self._reset_timeout - (now - opened_at), 0.0)

    def record_success(self, admission: Admission) -> None:
        transition: Transition | None = None
        with self._guard.held():
            if admission.epoch != self._epoch:
                return
            if admission.trial:
                transition = self._enter_closed()
            else:
                self._failure_count = 0
        if transition is not None:
            self._on_transition(transition)

    def record_failure(self, admission: Admission) -> None:
        transition: Transition | None = None
        with self._guard.held():
            if admission.epoch != self._epoch:
                return
            failures = self._failure_count + 1
            if admission.trial or failures >= self._max_failures:
                transition = self._enter_open(failures=failures)
            else:
                self._failure_count = failures
        if transition is not None:
            self._on_transition(transition)

    def abandon(self, admission: Admission) -> None:
        """Release a trial slot whose call ended without a verdict."""
        with self._guard.held():
            if admission.trial and admission.epoch == self._epoch:
                self._trial_taken = False

    def force_open(self) -> None:
        transition: Transition | None = None
        with self._guard.held():
            if self._state == CircuitState.OPEN:
                # Already open: restart the recovery window only.
                self._schedule_reset(self._epoch + 1)
                self._epoch += 1
                self._opened_at = self._timers.monotonic()
            else:
                transition = self._enter_open()
        if transition is not None:
            self._on_transition(transition)

    def force_closed(self) -> None:
        transition: Transition | None = None
        with self._guard.held():
            if self._state == CircuitState.CLOSED:
                self._epoch += 1
                self._failure_count = 0
            else:
                transition = self._enter_closed()
        if transition is not None:
            self._on_transition(transition)

    def dispose(self) -> None:
        """Cancel the pending reset timer and stop scheduling new ones."""
        with self._guard.held():
            self._disposed = True
            self._cancel_reset_timer()

    def _snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            opened_at=self._opened_at,
        )

    def _move_to(self, new: CircuitState) -> Transition:
        old = self._state
        self._state = new
        self._epoch += 1
        self._trial_taken = False
        return Transition(old=old, new=new, snapshot=self._snapshot())

    def _enter_open(self, *, failures: int | None = None) -> Transition:
        # Arm the timer before touching state; a scheduling error changes nothing.
        self._schedule_reset(self._epoch + 1)
        if failures is not None:
            self._failure_count = failures
        self._opened_at = self._timers.monotonic()
        return self._move_to(CircuitState.OPEN)

    def _enter_half_open(self) -> Transition:
        self._failure_count = 0
        self._opened_at = None
        return self._move_to(CircuitState.HALF_OPEN)

    def _enter_closed(self) -> Transition:
        self._cancel_reset_timer()
        self._failure_count = 0
        self._opened_at = None
        return self._move_to(CircuitState.CLOSED)

    def _schedule_reset(self, epoch: int) -> None:
        if self._reset_timeout < 0 or self._disposed:
            self._cancel_reset_timer()
            return
        handle = self._timers.call_later(
            self._reset_timeout,
            partial(self._on_reset_timer, epoch),
        )
        self._cancel_reset_timer()
        self._reset_timer = handle

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _on_reset_timer(self, epoch: int) -> None:
        with self._guard.held():
            if (
                self._disposed
                or self._state != CircuitState.OPEN
                or epoch != self._epoch
            ):
                return
            self._reset_timer = None
            transition = self._enter_half_open()
        self._on_transition(transition)
