"""Core circuit breaker implementation."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, TypeVar

from breakwater.circuit_breaker.exceptions import (
    CircuitOpenError,
    OperationTimeoutError,
)
from breakwater.circuit_breaker.fallback import Fallback, resolve_fallback
from breakwater.circuit_breaker.machine import CircuitStateMachine
from breakwater.circuit_breaker.notifications import (
    LOCAL_NODE_ID,
    NotificationEmitter,
    NotificationSink,
)
from breakwater.circuit_breaker.state import (
    Admission,
    BreakerSnapshot,
    CircuitState,
    Transition,
)
from breakwater.circuit_breaker.timers import AsyncioTimerService, TimerService
from breakwater.logging import (
    StructuredLogger,
    get_breaker_logger,
    log_debug,
    log_error,
    log_exception,
    log_info,
    log_warning,
)

T = TypeVar("T")

Handler = Callable[[], object]


def _expire(deadline: "asyncio.Future[None]") -> None:
    if not deadline.done():
        deadline.set_result(None)


def _callable_name(func: Callable[..., object]) -> str:
    name = getattr(func, "__qualname__", None)
    if name is None:
        name = getattr(func, "__name__", None)
    if name is None:
        name = func.__class__.__qualname__
    return str(name)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Durations are in seconds.

    Attributes:
        max_failures: Consecutive failures while ``CLOSED`` before opening.
        timeout: Deadline for an admitted call; ``<= 0`` disables it.
        reset_timeout: Time spent ``OPEN`` before the half-open trial;
            negative disables automatic reset.
        fallback_on_failure: Also route admitted-call failures to the fallback.
        notification_address: Where state snapshots are broadcast; ``None``
            disables broadcasting.
        notification_period: Interval of periodic snapshots; ``0`` disables them.
        node_id: Identifier of this process in broadcast payloads.
    """

    max_failures: int = 5
    timeout: float = 10.0
    reset_timeout: float = 30.0
    fallback_on_failure: bool = False
    notification_address: str | None = None
    notification_period: float = 2.0
    node_id: str = LOCAL_NODE_ID

    def __post_init__(self) -> None:
        if self.max_failures < 1:
            raise ValueError("max_failures must be >= 1")
        if self.notification_period < 0:
            raise ValueError("notification_period must be >= 0")
        if not self.node_id:
            raise ValueError("node_id must be non-empty")


class CircuitBreaker:
    """Stateful guard around a dangerous async operation."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        timers: TimerService | None = None,
        sink: NotificationSink | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom collaborators.

        Args:
            name: Breaker name used in notifications and logs.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            timers: Timer service for deadlines and reset scheduling. Defaults
                to the running asyncio loop.
            sink: Notification collaborator; only used when the config has a
                notification address.
            logger: Structured logger. Defaults to the shared breaker logger.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._timers = AsyncioTimerService() if timers is None else timers
        self._logger = get_breaker_logger() if logger is None else logger
        self._fallback: Fallback | None = None
        self._handlers: dict[CircuitState, Handler] = {}
        self._background: set[asyncio.Future[Any]] = set()
        self._machine = CircuitStateMachine(
            name,
            max_failures=self.config.max_failures,
            reset_timeout=self.config.reset_timeout,
            timers=self._timers,
            on_transition=self._on_transition,
        )
        self._emitter = NotificationEmitter(
            name,
            address=self.config.notification_address,
            period=self.config.notification_period,
            node_id=self.config.node_id,
            sink=sink,
            snapshot=self._machine.snapshot,
            logger=self._logger,
        )
        self._emitter.start()

    @property
    def state(self) -> CircuitState:
        return self._machine.state

    @property
    def failure_count(self) -> int:
        return self._machine.failure_count

    def snapshot(self) -> BreakerSnapshot:
        return self._machine.snapshot()

    def fallback(self, fallback: Fallback) -> "CircuitBreaker":
        """Set the default fallback used by ``execute``."""
        self._fallback = fallback
        return self

    def open_handler(self, handler: Handler) -> "CircuitBreaker":
        """Call ``handler`` on every transition into ``OPEN``."""
        self._handlers[CircuitState.OPEN] = handler
        return self

    def close_handler(self, handler: Handler) -> "CircuitBreaker":
        """Call ``handler`` on every transition into ``CLOSED``."""
        self._handlers[CircuitState.CLOSED] = handler
        return self

    def half_open_handler(self, handler: Handler) -> "CircuitBreaker":
        """Call ``handler`` on every transition into ``HALF_OPEN``."""
        self._handlers[CircuitState.HALF_OPEN] = handler
        return self

    def open(self) -> None:
        """Force the circuit open and restart the recovery window.

        Raises:
            RuntimeError: The timer service could not schedule the reset, e.g.
                the default asyncio timers without a running loop. The state
                is left unchanged.
        """
        self._machine.force_open()

    def close(self) -> None:
        """Force the circuit closed, cancelling the reset timer and failures."""
        self._machine.force_closed()

    def reset(self) -> None:
        """Return to a healthy ``CLOSED`` state with zero failures."""
        self._machine.force_closed()

    def dispose(self) -> None:
        """Cancel timers and notifications; in-flight calls still resolve."""
        self._machine.dispose()
        self._emitter.close()

    async def aclose(self) -> None:
        """Dispose the breaker after delivering queued notifications."""
        self._machine.dispose()
        await self._emitter.aclose()

    async def flush_notifications(self) -> None:
        """Wait until queued notifications have been handed to the sink."""
        await self._emitter.flush()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under circuit breaker protection.

        Args:
            operation: Zero-argument callable returning the awaitable to guard.

        Returns:
            The operation result, or the fallback result when the call was
            blocked (or failed with ``fallback_on_failure`` set).

        Raises:
            CircuitOpenError: The call was blocked and no fallback is set.
            OperationTimeoutError: The deadline passed first and no fallback
                applies.
            FallbackError: The fallback itself raised.
            Exception: The operation's own exception when no fallback applies.
        """
        return await self._execute(operation, self._fallback)

    async def execute_with_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback,
    ) -> T:
        """Like ``execute`` but with a per-call fallback."""
        return await self._execute(operation, fallback)

    async def execute_and_report(
        self,
        operation: Callable[[], Awaitable[T]],
        target: "asyncio.Future[T]",
    ) -> None:
        """Like ``execute`` but write the outcome into ``target``.

        ``target`` is left untouched if something else already completed it.
        """
        try:
            result = await self.execute(operation)
        except Exception as exc:
            if not target.done():
                target.set_exception(exc)
            return
        except asyncio.CancelledError:
            if not target.done():
                target.cancel()
            raise
        if not target.done():
            target.set_result(result)

    async def _execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback | None,
    ) -> T:
        self._emitter.start()
        admission = self._machine.try_admit()
        if admission is None:
            return await self._reject(fallback)

        try:
            result = await self._run_admitted(operation)
        except Exception as exc:
            self._machine.record_failure(admission)
            if self.config.fallback_on_failure and fallback is not None:
                return await resolve_fallback(self.name, fallback, exc)
            raise
        except BaseException:
            self._abandon(admission)
            raise
        self._machine.record_success(admission)
        return result

    def _abandon(self, admission: Admission) -> None:
        self._machine.abandon(admission)
        if admission.trial:
            log_debug(
                self._logger,
                "circuit_breaker.trial_abandoned",
                breaker=self.name,
            )

    async def _reject(self, fallback: Fallback | None) -> Any:
        error = CircuitOpenError(
            self.name,
            state=self._machine.state,
            retry_after=self._machine.retry_after(),
        )
        log_debug(
            self._logger,
            "circuit_breaker.call_rejected",
            breaker=self.name,
            state=error.state.value,
            retry_after=error.retry_after,
        )
        return await resolve_fallback(self.name, fallback, error)

    async def _run_admitted(self, operation: Callable[[], Awaitable[T]]) -> T:
        awaitable = operation()
        if inspect.iscoroutine(awaitable):
            task: asyncio.Future[T] = asyncio.create_task(
                awaitable,
                name=f"circuit_breaker:{self.name}:{_callable_name(operation)}",
            )
        else:
            task = asyncio.ensure_future(awaitable)

        timeout = self.config.timeout
        if timeout <= 0:
            return await task

        deadline: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        handle = self._timers.call_later(timeout, partial(_expire, deadline))
        try:
            await asyncio.wait((task, deadline), return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            handle.cancel()
            if not deadline.done():
                deadline.cancel()

        if task.done():
            return task.result()

        self._detach(task)
        log_warning(
            self._logger,
            "circuit_breaker.call_timed_out",
            breaker=self.name,
            timeout=timeout,
        )
        raise OperationTimeoutError(self.name, timeout)

    def _detach(self, task: "asyncio.Future[Any]") -> None:
        self._background.add(task)
        task.add_done_callback(self._on_late_completion)

    def _on_late_completion(self, task: "asyncio.Future[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        log_debug(
            self._logger,
            "circuit_breaker.late_completion_discarded",
            breaker=self.name,
            failed=error is not None,
        )

    def _on_transition(self, transition: Transition) -> None:
        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=self.name,
            old=transition.old.value,
            new=transition.new.value,
            failures=transition.snapshot.failure_count,
        )
        handler = self._handlers.get(transition.new)
        if handler is not None:
            self._dispatch(handler, transition.new)
        self._emitter.emit(transition.snapshot)

    def _dispatch(self, handler: Handler, state: CircuitState) -> None:
        try:
            result = handler()
        except Exception:
            log_exception(
                self._logger,
                "circuit_breaker.handler_failed",
                breaker=self.name,
                state=state.value,
            )
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(result):
                result.close()
            log_error(
                self._logger,
                "circuit_breaker.handler_failed",
                breaker=self.name,
                state=state.value,
                error_type="RuntimeError",
                error="no running event loop for async handler",
            )
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._background.add(task)
        task.add_done_callback(partial(self._on_handler_done, state))

    def _on_handler_done(
        self,
        state: CircuitState,
        task: "asyncio.Future[Any]",
    ) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        log_error(
            self._logger,
            "circuit_breaker.handler_failed",
            breaker=self.name,
            state=state.value,
            error_type=error.__class__.__name__,
            error=str(error),
        )
