import asyncio

import pytest

from breakwater.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    FallbackError,
    OperationTimeoutError,
)
from tests.breakwater.support.runtime_fakes import FakeLogger, FakeTimerService

pytestmark = pytest.mark.asyncio


def _make_breaker(
    timers: FakeTimerService,
    logger: FakeLogger,
    **overrides: object,
) -> CircuitBreaker:
    values: dict[str, object] = {
        "max_failures": 2,
        "timeout": 0.1,
        "reset_timeout": 0.05,
    }
    values.update(overrides)
    return CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(**values),  # type: ignore[arg-type]
        timers=timers,
        logger=logger,
    )


async def _ok() -> str:
    return "ok"


async def _fail() -> str:
    raise RuntimeError("nope")


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def _trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.max_failures):
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
    assert breaker.state == CircuitState.OPEN


async def test_closed_call_succeeds_and_stays_closed(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


async def test_call_with_async_callable_instance_succeeds(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)

    class _AsyncCallable:
        async def __call__(self) -> str:
            return "ok"

    assert await breaker.execute(_AsyncCallable()) == "ok"


async def test_operation_returning_plain_future_is_supported(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    future.set_result("done")

    assert await breaker.execute(lambda: future) == "done"


async def test_consecutive_failures_open_and_block_without_running_operation(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, reset_timeout=10.0)
    await _trip(breaker)
    assert breaker.failure_count == 2

    calls = 0

    async def _counted() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    for _ in range(3):
        with pytest.raises(CircuitOpenError) as excinfo:
            await breaker.execute(_counted)

    assert calls == 0
    assert excinfo.value.state == CircuitState.OPEN
    assert excinfo.value.retry_after == pytest.approx(10.0)
    assert breaker.failure_count == 2


async def test_single_success_resets_failure_count(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, max_failures=3)

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
    assert breaker.failure_count == 2

    await breaker.execute(_ok)

    assert breaker.failure_count == 0
    assert breaker.state == CircuitState.CLOSED


async def test_synchronous_raise_from_operation_counts_as_failure(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)

    def _explode() -> asyncio.Future[str]:
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        await breaker.execute(_explode)

    assert breaker.failure_count == 1


async def test_trial_success_after_reset_timeout_closes(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)

    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)

    fake_timers.advance(0.06)
    assert breaker.state == CircuitState.HALF_OPEN

    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


async def test_trial_failure_reopens_and_schedules_new_reset(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)

    fake_timers.advance(0.06)
    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)

    assert breaker.state == CircuitState.OPEN
    assert len(fake_timers.pending()) == 1

    fake_timers.advance(0.001)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)

    fake_timers.advance(0.05)
    assert breaker.state == CircuitState.HALF_OPEN


async def test_failure_count_resets_on_half_open_and_failed_trial_counts_one(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    assert breaker.failure_count == 2

    fake_timers.advance(0.05)
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.failure_count == 0

    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)
    assert breaker.failure_count == 1


async def test_half_open_admits_single_trial_and_rejects_concurrent(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    fake_timers.advance(0.05)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _trial() -> str:
        started.set()
        await release.wait()
        return "trial"

    task = asyncio.create_task(breaker.execute(_trial))
    await started.wait()

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(_ok)
    assert excinfo.value.retry_after == 0.0
    assert excinfo.value.state == CircuitState.HALF_OPEN

    release.set()
    assert await task == "trial"
    assert breaker.state == CircuitState.CLOSED
    assert await breaker.execute(_ok) == "ok"


async def test_concurrent_calls_at_half_open_see_one_admission(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    fake_timers.advance(0.05)

    admitted = 0

    async def _counted() -> str:
        nonlocal admitted
        admitted += 1
        return "ok"

    results = await asyncio.gather(
        *(breaker.execute(_counted) for _ in range(5)),
        return_exceptions=True,
    )

    assert admitted == 1
    assert results.count("ok") == 1
    assert sum(isinstance(r, CircuitOpenError) for r in results) == 4


async def test_timeout_classifies_failure_and_ignores_late_success(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, timeout=0.05, max_failures=5)
    release = asyncio.Event()
    finished = False

    async def _slow() -> str:
        nonlocal finished
        await release.wait()
        finished = True
        return "late"

    task = asyncio.create_task(breaker.execute(_slow))
    await _settle()
    fake_timers.advance(0.05)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await task
    assert excinfo.value.timeout == 0.05
    assert breaker.failure_count == 1
    assert "circuit_breaker.call_timed_out" in fake_logger.events

    release.set()
    await _settle()

    assert finished is True
    assert breaker.failure_count == 1
    assert breaker.state == CircuitState.CLOSED


async def test_trial_timeout_reopens(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    fake_timers.advance(0.05)

    never = asyncio.Event()

    async def _hang() -> str:
        await never.wait()
        return "never"

    task = asyncio.create_task(breaker.execute(_hang))
    await _settle()
    fake_timers.advance(0.1)

    with pytest.raises(OperationTimeoutError):
        await task
    assert breaker.state == CircuitState.OPEN
    never.set()
    await _settle()


async def test_zero_timeout_disables_deadline(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, timeout=0)

    assert await breaker.execute(_ok) == "ok"
    assert fake_timers.handles == []


async def test_fallback_on_failure_returns_substitute_and_counts_failure(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, fallback_on_failure=True)
    breaker.fallback(lambda exc: "X")

    assert await breaker.execute(_fail) == "X"
    assert breaker.failure_count == 1


async def test_failure_propagates_without_fallback_on_failure(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    breaker.fallback(lambda exc: "X")

    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)


async def test_blocked_call_routes_circuit_open_error_to_fallback(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    seen: list[BaseException] = []

    def _fallback(exc: BaseException) -> str:
        seen.append(exc)
        return "cached"

    breaker.fallback(_fallback)

    assert await breaker.execute(_ok) == "cached"
    assert isinstance(seen[0], CircuitOpenError)
    assert breaker.failure_count == 2


async def test_async_fallback_is_awaited(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)

    async def _fallback(exc: BaseException) -> str:
        return "async-cached"

    assert await breaker.execute_with_fallback(_ok, _fallback) == "async-cached"


async def test_failing_fallback_raises_fallback_error(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, fallback_on_failure=True)

    def _broken(exc: BaseException) -> str:
        raise KeyError("cache miss")

    with pytest.raises(FallbackError) as excinfo:
        await breaker.execute_with_fallback(_fail, _broken)

    assert isinstance(excinfo.value.trigger, RuntimeError)
    assert isinstance(excinfo.value.__cause__, KeyError)
    assert excinfo.value.breaker_name == "svc"


async def test_per_call_fallback_overrides_default(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    breaker.fallback(lambda exc: "default")
    await _trip(breaker)

    assert await breaker.execute_with_fallback(_ok, lambda exc: "per-call") == (
        "per-call"
    )
    assert await breaker.execute(_ok) == "default"


async def test_execute_and_report_writes_into_target(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, max_failures=1)
    loop = asyncio.get_running_loop()

    success: asyncio.Future[str] = loop.create_future()
    await breaker.execute_and_report(_ok, success)
    assert success.result() == "ok"

    failure: asyncio.Future[str] = loop.create_future()
    await breaker.execute_and_report(_fail, failure)
    assert isinstance(failure.exception(), RuntimeError)

    blocked: asyncio.Future[str] = loop.create_future()
    await breaker.execute_and_report(_ok, blocked)
    assert isinstance(blocked.exception(), CircuitOpenError)


async def test_execute_and_report_leaves_completed_target_alone(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    target: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    target.set_result("first")

    await breaker.execute_and_report(_ok, target)

    assert target.result() == "first"


async def test_handlers_fire_once_per_transition(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    fired: list[str] = []
    (
        breaker.open_handler(lambda: fired.append("open"))
        .half_open_handler(lambda: fired.append("half_open"))
        .close_handler(lambda: fired.append("close"))
    )

    await _trip(breaker)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_ok)
    fake_timers.advance(0.05)
    await breaker.execute(_ok)
    await breaker.execute(_ok)

    assert fired == ["open", "half_open", "close"]


async def test_async_handler_is_dispatched_not_awaited(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    release = asyncio.Event()
    done: list[str] = []

    async def _on_open() -> None:
        await release.wait()
        done.append("open")

    breaker.open_handler(_on_open)
    breaker.open()

    assert breaker.state == CircuitState.OPEN
    assert done == []
    release.set()
    await _settle()
    assert done == ["open"]


async def test_failing_handlers_are_logged_and_do_not_break_transitions(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)

    def _sync_boom() -> None:
        raise RuntimeError("handler boom")

    async def _async_boom() -> None:
        raise RuntimeError("async handler boom")

    breaker.open_handler(_sync_boom).half_open_handler(_async_boom)

    await _trip(breaker)
    fake_timers.advance(0.05)
    await _settle()

    assert breaker.state == CircuitState.HALF_OPEN
    levels = [
        level
        for level, event, _ in fake_logger.calls
        if event == "circuit_breaker.handler_failed"
    ]
    assert levels == ["exception", "error"]


async def test_manual_open_close_and_reset(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, max_failures=5)
    fired: list[str] = []
    breaker.open_handler(lambda: fired.append("open"))
    breaker.close_handler(lambda: fired.append("close"))

    breaker.open()
    assert breaker.state == CircuitState.OPEN
    assert len(fake_timers.pending()) == 1

    breaker.close()
    assert breaker.state == CircuitState.CLOSED
    assert fake_timers.pending() == []

    with pytest.raises(RuntimeError):
        await breaker.execute(_fail)
    assert breaker.failure_count == 1

    breaker.reset()
    assert breaker.failure_count == 0
    assert fired == ["open", "close"]


async def test_manual_open_while_open_restarts_window_without_handler(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    fired: list[str] = []
    breaker.open_handler(lambda: fired.append("open"))

    breaker.open()
    fake_timers.advance(0.04)
    breaker.open()

    assert len(fake_timers.pending()) == 1
    fake_timers.advance(0.04)
    assert breaker.state == CircuitState.OPEN
    fake_timers.advance(0.02)
    assert breaker.state == CircuitState.HALF_OPEN
    assert fired == ["open"]


async def test_reset_from_half_open_discards_trial_outcome(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    fake_timers.advance(0.05)

    release = asyncio.Event()

    async def _failing_trial() -> str:
        await release.wait()
        raise RuntimeError("trial failed")

    task = asyncio.create_task(breaker.execute(_failing_trial))
    await _settle()
    breaker.reset()
    release.set()

    with pytest.raises(RuntimeError):
        await task
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


async def test_negative_reset_timeout_stays_open_until_reset(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, reset_timeout=-1)
    await _trip(breaker)

    assert fake_timers.pending() == []
    fake_timers.advance(3600)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(_ok)
    assert excinfo.value.retry_after is None

    breaker.reset()
    assert await breaker.execute(_ok) == "ok"


async def test_stale_outcome_from_closed_period_is_ignored(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, timeout=0)
    release = asyncio.Event()

    async def _slow_fail() -> str:
        await release.wait()
        raise RuntimeError("late failure")

    task = asyncio.create_task(breaker.execute(_slow_fail))
    await _settle()
    breaker.open()
    fake_timers.advance(0.05)
    assert breaker.state == CircuitState.HALF_OPEN

    release.set()
    with pytest.raises(RuntimeError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.failure_count == 0


async def test_cancelled_trial_releases_slot(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)
    await _trip(breaker)
    fake_timers.advance(0.05)

    never = asyncio.Event()

    async def _hang() -> str:
        await never.wait()
        return "never"

    task = asyncio.create_task(breaker.execute(_hang))
    await _settle()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert "circuit_breaker.trial_abandoned" in fake_logger.events
    assert await breaker.execute(_ok) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_dispose_cancels_reset_timer_but_in_flight_call_resolves(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger, timeout=0)
    release = asyncio.Event()

    async def _slow() -> str:
        await release.wait()
        return "done"

    task = asyncio.create_task(breaker.execute(_slow))
    await _settle()

    breaker.open()
    breaker.dispose()
    assert fake_timers.pending() == []

    release.set()
    assert await task == "done"
    fake_timers.advance(60)
    assert breaker.state == CircuitState.OPEN


async def test_state_changes_are_logged(
    fake_timers: FakeTimerService, fake_logger: FakeLogger
) -> None:
    breaker = _make_breaker(fake_timers, fake_logger)

    await _trip(breaker)

    changes = [
        fields
        for _, event, fields in fake_logger.calls
        if event == "circuit_breaker.state_changed"
    ]
    assert changes == [
        {"breaker": "svc", "old": "closed", "new": "open", "failures": 2}
    ]


async def test_config_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="max_failures"):
        CircuitBreakerConfig(max_failures=0)
    with pytest.raises(ValueError, match="notification_period"):
        CircuitBreakerConfig(notification_period=-1.0)
    with pytest.raises(ValueError, match="node_id"):
        CircuitBreakerConfig(node_id="")
