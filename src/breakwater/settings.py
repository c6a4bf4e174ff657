from __future__ import annotations

import structlog
from faststream import ContextRepo
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from breakwater.circuit_breaker import CircuitBreakerConfig
from breakwater.logging import configure_structlog, get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class CircuitBreakerSettings(BaseSettings):
    """Environment-driven circuit breaker settings.

    Durations are in seconds. Subclass with ``prefixed_settings_config`` to
    read per-breaker variables, e.g. ``GEOCODER_BREAKER_MAX_FAILURES``.
    """

    model_config = prefixed_settings_config("CIRCUIT_BREAKER_")

    max_failures: int = 5
    timeout: float = 10.0
    reset_timeout: float = 30.0
    fallback_on_failure: bool = False
    notification_address: str | None = None
    notification_period: float = 2.0
    node_id: str = "local"
    log_level: str = "INFO"
    breaker_log_level: str | None = None

    @field_validator("notification_address", mode="before")
    @classmethod
    def _normalize_notification_address(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value

    @field_validator("node_id", mode="before")
    @classmethod
    def _validate_node_id(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError("node_id must be non-empty")
        return normalized

    @field_validator("log_level", "breaker_log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or None
        return value

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> CircuitBreakerSettings:
        if self.max_failures < 1:
            raise ValueError("max_failures must be >= 1")
        if self.notification_period < 0:
            raise ValueError("notification_period must be >= 0")
        get_log_level_value(self.log_level)
        if self.breaker_log_level is not None:
            get_log_level_value(self.breaker_log_level)
        return self

    def to_config(self) -> CircuitBreakerConfig:
        """Build the breaker configuration these settings describe."""
        return CircuitBreakerConfig(
            max_failures=self.max_failures,
            timeout=self.timeout,
            reset_timeout=self.reset_timeout,
            fallback_on_failure=self.fallback_on_failure,
            notification_address=self.notification_address,
            notification_period=self.notification_period,
            node_id=self.node_id,
        )

    def configure_logging(
        self,
        context: ContextRepo | None = None,
    ) -> structlog.stdlib.BoundLogger:
        """Configure structlog for a breaker host from these settings.

        Every event is stamped with ``node_id`` so log lines match the
        ``node`` field of broadcast payloads.
        """
        return configure_structlog(
            log_level=self.log_level,
            context=context,
            node_id=self.node_id,
            breaker_log_level=self.breaker_log_level,
        )
