"""Shared fixtures: settings, in-memory collaborators and a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from shazamq_operator.config import OperatorSettings
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.reconciler import ClusterReconciler
from shazamq_operator.testing import FakeBroker, InMemoryPlatform


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _make_settings(**overrides) -> OperatorSettings:
    values = {
        "identity": "operator-a",
        "backoff_base_seconds": 0.001,
        "backoff_max_seconds": 0.01,
        "api_timeout_seconds": 2.0,
        "upgrade_readiness_timeout_seconds": 60.0,
        "upgrade_max_attempts": 2,
    }
    values.update(overrides)
    return OperatorSettings(**values)


@pytest.fixture
def settings() -> OperatorSettings:
    return _make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def platform() -> InMemoryPlatform:
    return InMemoryPlatform()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker(version="0.1.1-rc1")


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def api(platform, settings) -> GuardedPlatform:
    return GuardedPlatform(platform, settings)


@pytest.fixture
def reconciler(api, broker, settings, recorder, clock) -> ClusterReconciler:
    return ClusterReconciler(api, broker, settings, recorder, clock=clock)


@pytest.fixture
def make_settings():
    """Factory for settings with test-friendly timing and explicit overrides."""
    return _make_settings
