"""Named circuit breakers shared between call sites."""

from collections.abc import Iterator

from breakwater.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from breakwater.circuit_breaker.notifications import NotificationSink
from breakwater.circuit_breaker.timers import TimerService
from breakwater.logging import StructuredLogger, get_breaker_logger, log_info


class CircuitBreakerRegistry:
    """Owned mapping of breaker name to breaker.

    Breakers created through a registry share its timer service, notification
    sink and logger. The registry's owner controls its lifetime; two registries
    never share breakers.
    """

    def __init__(
        self,
        *,
        default_config: CircuitBreakerConfig | None = None,
        timers: TimerService | None = None,
        sink: NotificationSink | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._default_config = default_config
        self._timers = timers
        self._sink = sink
        self._logger = get_breaker_logger() if logger is None else logger
        self._breakers: dict[str, CircuitBreaker] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter(tuple(self._breakers.values()))

    def __len__(self) -> int:
        return len(self._breakers)

    def names(self) -> tuple[str, ...]:
        return tuple(self._breakers)

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Create and register breaker ``name``.

        Raises:
            ValueError: A breaker with this name is already registered.
        """
        if name in self._breakers:
            raise ValueError(f"circuit breaker already registered: {name}")
        breaker = CircuitBreaker(
            name,
            config=self._default_config if config is None else config,
            timers=self._timers,
            sink=self._sink,
            logger=self._logger,
        )
        self._breakers[name] = breaker
        log_info(self._logger, "circuit_breaker.registered", breaker=name)
        return breaker

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Return breaker ``name``, creating it on first use.

        ``config`` is only applied when the breaker does not exist yet.
        """
        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker
        return self.create(name, config)

    def remove(self, name: str) -> CircuitBreaker | None:
        """Unregister and dispose breaker ``name``."""
        breaker = self._breakers.pop(name, None)
        if breaker is not None:
            breaker.dispose()
        return breaker

    async def aclose(self) -> None:
        """Dispose every breaker after delivering queued notifications."""
        breakers = tuple(self._breakers.values())
        self._breakers.clear()
        for breaker in breakers:
            await breaker.aclose()
