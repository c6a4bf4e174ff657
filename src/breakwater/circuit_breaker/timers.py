"""Clock and timer service used for deadlines and reset scheduling."""

import asyncio
import time
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    """Cancellable handle for one scheduled callback."""

    def cancel(self) -> None:
        """Cancel the callback if it has not fired yet."""


class TimerService(Protocol):
    """Schedule callbacks after a delay and report monotonic time."""

    def monotonic(self) -> float:
        """Return the current monotonic time in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""


class AsyncioTimerService:
    """Timer service backed by the running asyncio event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as error:
            raise RuntimeError(
                "AsyncioTimerService needs a running event loop; "
                "call breaker controls from async code or inject a TimerService"
            ) from error
        return loop.call_later(max(delay, 0.0), callback)
