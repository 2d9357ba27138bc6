"""
Shared fixtures for Segments Service tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_segments.app.storage.memory import InMemorySegmentStorage


class FakeClock:
    """Settable clock handed to storage backends."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at 2024-03-10 10:00 UTC."""
    return FakeClock(datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage(clock):
    """In-memory storage with ten active users (1-10) and two inactive ones."""
    backend = InMemorySegmentStorage(clock=clock)
    backend.add_users(range(1, 11))
    backend.add_users([11, 12], is_active=False)
    return backend
