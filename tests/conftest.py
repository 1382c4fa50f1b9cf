"""Shared fixtures for fleetguard tests."""

from typing import Any, Sequence

import pytest

from fleetguard.app.core.events import CollectingEventSink
from fleetguard.app.exceptions import StoreUnavailableError
from fleetguard.app.services.admission import reset_admission_controller
from fleetguard.app.store import InMemoryAtomicStore, reset_atomic_store
from fleetguard.app.store.base import AtomicStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(AtomicStore):
    """Store whose every call fails like an unreachable Redis."""

    def __init__(self, reason: str = "connection_error"):
        self.reason = reason
        self.calls = 0

    async def execute(self, script_name: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        self.calls += 1
        raise StoreUnavailableError(self.reason)


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset process-wide instances before and after each test."""
    reset_atomic_store()
    reset_admission_controller()
    yield
    reset_atomic_store()
    reset_admission_controller()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store_clock():
    """Clock driving key expiry inside the in-memory store."""
    return FakeClock()


@pytest.fixture
def store(store_clock):
    return InMemoryAtomicStore(clock=store_clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def sink():
    return CollectingEventSink()
