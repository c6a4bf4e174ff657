"""State-change notifications for circuit breakers.

Each breaker with a notification address owns one emitter. Payloads go through
a single queue drained by one worker task, so a sink sees them in the order the
transitions happened. Periodic snapshots are skipped while the queue is not
empty, so a stalled sink does not pile up periodic snapshots. Sink failures
are logged and never reach the state machine.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from typing import Protocol

from breakwater.circuit_breaker.state import BreakerSnapshot
from breakwater.logging import StructuredLogger, log_debug, log_exception

LOCAL_NODE_ID = "local"


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class NotificationSink(Protocol):
    """Collaborator that delivers breaker payloads to an address."""

    async def publish(self, address: str, payload: Mapping[str, object]) -> None:
        """Emit ``payload`` to ``address``."""


def build_payload(snapshot: BreakerSnapshot, node_id: str) -> dict[str, object]:
    """Build the broadcast record for one breaker snapshot."""
    return {
        "state": snapshot.state.value,
        "name": snapshot.name,
        "failures": snapshot.failure_count,
        "node": node_id,
    }


class InMemoryNotificationSink:
    """Sink that keeps every published payload, keyed by address."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, object]]] = []

    async def publish(self, address: str, payload: Mapping[str, object]) -> None:
        self.published.append((address, dict(payload)))

    def payloads(self, address: str | None = None) -> list[dict[str, object]]:
        """Return payloads, optionally only those sent to ``address``."""
        return [
            payload
            for target, payload in self.published
            if address is None or target == address
        ]


class NotificationEmitter:
    """Ordered, non-blocking publisher of breaker snapshots."""

    def __init__(
        self,
        name: str,
        *,
        address: str | None,
        period: float,
        node_id: str,
        sink: NotificationSink | None,
        snapshot: Callable[[], BreakerSnapshot],
        logger: StructuredLogger,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Create an emitter; nothing runs until a loop is available.

        Args:
            name: Breaker name used for task names and log fields.
            address: Destination address; ``None`` disables emission.
            period: Seconds between periodic snapshots; ``<= 0`` disables them.
            node_id: Identifier of the emitting node.
            sink: Delivery collaborator; ``None`` disables emission.
            snapshot: Returns the current breaker snapshot for periodic runs.
            logger: Structured logger for delivery failures.
            sleep: Awaitable sleep used between periodic snapshots.
        """
        self._name = name
        self._address = address
        self._period = period
        self._node_id = node_id
        self._sink = sink
        self._snapshot = snapshot
        self._logger = logger
        self._sleep = sleep
        self._queue: asyncio.Queue[dict[str, object]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._periodic: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._address is not None and self._sink is not None

    @property
    def pending(self) -> int:
        """Number of payloads queued but not yet taken by the worker."""
        return 0 if self._queue is None else self._queue.qsize()

    def start(self) -> None:
        """Start the worker (and periodic task) if a loop is running."""
        if not self.enabled or self._closed or not _loop_running():
            return
        self._ensure_started()

    def emit(self, snapshot: BreakerSnapshot) -> None:
        """Queue one snapshot for delivery without waiting for the sink.

        Outside a running event loop there is no worker to deliver it, so the
        snapshot is dropped and a debug event is logged.
        """
        if not self.enabled or self._closed:
            return
        if not _loop_running():
            log_debug(
                self._logger,
                "circuit_breaker.notification_skipped",
                breaker=self._name,
                state=snapshot.state.value,
                reason="no_running_loop",
            )
            return
        self._ensure_started()
        assert self._queue is not None
        self._queue.put_nowait(build_payload(snapshot, self._node_id))

    async def flush(self) -> None:
        """Wait until every queued payload has been handed to the sink."""
        if self._queue is not None and self._worker is not None:
            await self._queue.join()

    def close(self) -> None:
        """Stop periodic emission and drop anything still queued."""
        self._closed = True
        for task in (self._periodic, self._worker):
            if task is not None:
                task.cancel()
        self._periodic = None
        self._worker = None

    async def aclose(self) -> None:
        """Stop periodic emission, deliver queued payloads, then stop the worker."""
        periodic = self._periodic
        self._periodic = None
        if periodic is not None:
            periodic.cancel()
            with suppress(asyncio.CancelledError):
                await periodic
        await self.flush()
        worker = self._worker
        self.close()
        if worker is not None:
            with suppress(asyncio.CancelledError):
                await worker

    def _ensure_started(self) -> None:
        if self._worker is None:
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(
                self._drain(),
                name=f"circuit_breaker_notify:{self._name}",
            )
        if self._periodic is None and self._period > 0:
            self._periodic = asyncio.create_task(
                self._emit_periodically(),
                name=f"circuit_breaker_periodic:{self._name}",
            )

    async def _drain(self) -> None:
        assert self._queue is not None
        assert self._sink is not None
        assert self._address is not None
        while True:
            payload = await self._queue.get()
            try:
                await self._sink.publish(self._address, payload)
            except Exception:
                log_exception(
                    self._logger,
                    "circuit_breaker.notification_failed",
                    breaker=self._name,
                    address=self._address,
                    state=payload["state"],
                )
            finally:
                self._queue.task_done()

    async def _emit_periodically(self) -> None:
        while True:
            await self._sleep(self._period)
            if self.pending:
                # Earlier payloads still wait for the sink.
                continue
            self.emit(self._snapshot())
