from __future__ import annotations

import pytest

from tests.breakwater.support.runtime_fakes import (
    FakeLogger,
    FakeTimerService,
    RecordingSink,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_timers() -> FakeTimerService:
    """Provide a manually advanced timer service per test."""
    return FakeTimerService()


@pytest.fixture
def recording_sink() -> RecordingSink:
    """Provide a notification sink that records payloads."""
    return RecordingSink()
