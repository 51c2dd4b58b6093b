from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time; keep tests independent of any local .env
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from experiments_core.models.schemas import CreateExperimentRequest, CreateFlagRequest  # noqa: E402
from experiments_core.services.experiments_service import ExperimentsService  # noqa: E402
from experiments_core.store.memory import InMemoryExperimentsStore  # noqa: E402


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Monotonic timer that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def store(clock):
    return InMemoryExperimentsStore(clock=clock)


@pytest.fixture
def service(store, clock, timer):
    return ExperimentsService(store, cache_ttl_seconds=30.0, clock=clock, timer=timer)


@pytest.fixture
def make_flag_request():
    def _make(key="new_checkout", flag_type="boolean", **fields):
        data = {"key": key, "name": key.replace("_", " ").title(), "flag_type": flag_type}
        data.update(fields)
        return CreateFlagRequest(**data)

    return _make


@pytest.fixture
def make_experiment_request():
    def _make(key="checkout_button", variants=None, **fields):
        if variants is None:
            variants = [
                {"key": "control", "name": "Control", "is_control": True, "weight": 50},
                {"key": "treatment", "name": "Green button", "weight": 50, "config": {"color": "green"}},
            ]
        data = {
            "key": key,
            "name": "Checkout button color",
            "hypothesis": "A green button increases checkout conversion",
            "traffic_percentage": 100,
            "primary_metric": "conversion",
            "variants": variants,
        }
        data.update(fields)
        return CreateExperimentRequest(**data)

    return _make
