"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from pairlink.pairing.pairing_manager import PairingManager
from pairlink.store.memory import MemoryStore


class FakeClock:
    """Controllable UTC clock for created_at assignment."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from pairlink.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(clock):
    """In-memory store with a fake clock, closed after the test."""
    store = MemoryStore(clock=clock)
    yield store
    await store.close()


@pytest.fixture
def pairing(store):
    return PairingManager(store)
