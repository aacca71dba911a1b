"""Shared test fixtures for woof-guard."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from woof_guard.models import RateLimitPolicy, SecurityEvent, SecurityEventType, Severity
from woof_guard.ratelimit.store import InMemoryCounterStore
from woof_guard.security.alerts import AlertDispatcher, AlertSink
from woof_guard.security.monitor import SecurityMonitor


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def mock_sink() -> MagicMock:
    sink = MagicMock(spec=AlertSink)
    sink.capture_message = AsyncMock()
    return sink


@pytest.fixture
def monitor(mock_sink: MagicMock, clock: FakeClock) -> SecurityMonitor:
    return SecurityMonitor(
        alert_threshold=10,
        window_ms=5 * 60 * 1000,
        dispatcher=AlertDispatcher(mock_sink, inline=True),
        clock=clock,
    )


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


# --- Factory functions for test data ---


def make_policy(**kwargs: object) -> RateLimitPolicy:
    """Factory for RateLimitPolicy with sensible defaults."""
    defaults: dict[str, object] = {
        "name": "TEST",
        "max_requests": 3,
        "window_ms": 60_000,
        "user_message": "Too many test requests",
        "error_code": "TEST_RATE_LIMIT_EXCEEDED",
        "skip_successful_requests": False,
    }
    defaults.update(kwargs)
    return RateLimitPolicy(**defaults)  # type: ignore[arg-type]


def make_security_event(**kwargs: object) -> SecurityEvent:
    """Factory for SecurityEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": SecurityEventType.RATE_LIMIT_EXCEEDED,
        "endpoint": "LOGIN",
        "client_ip": "203.0.113.7",
        "severity": Severity.WARNING,
        "details": {"limit": 5, "window_ms": 900_000},
    }
    defaults.update(kwargs)
    return SecurityEvent(**defaults)  # type: ignore[arg-type]
