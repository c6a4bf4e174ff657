from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol


class _PublisherLike(Protocol):
    """Subset of a FastStream broker used to publish notifications."""

    async def publish(self, message: object, topic: str, **kwargs: object) -> object:
        """Publish one message to ``topic``."""


class FastStreamNotificationSink:
    """Publish breaker notifications to Kafka through a FastStream broker.

    The notification address is used as the topic name. Payloads are keyed by
    breaker name so one breaker's notifications stay on one partition and keep
    their order.
    """

    def __init__(
        self,
        *,
        broker: _PublisherLike,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Create a sink bound to one broker.

        Args:
            broker: Connected FastStream ``KafkaBroker`` (or compatible).
            headers: Static headers attached to every notification.
        """
        self._broker = broker
        self._headers = dict(headers or {})

    async def publish(self, address: str, payload: Mapping[str, object]) -> None:
        """Publish ``payload`` as JSON to topic ``address``."""
        name = payload.get("name")
        key = str(name).encode() if name is not None else None
        await self._broker.publish(
            dict(payload),
            topic=address,
            key=key,
            headers=dict(self._headers),
        )
