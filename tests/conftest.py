"""
Shared pytest fixtures for the companion backend tests.

Provides:
- Isolated conversation store / context manager instances
- A metrics aggregator driven by a controllable clock
- An event log to observe emitted events
- Helpers for seeding conversations
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from companion.core.config import WindowConfig
from companion.core.session_store import Classification, ConversationStore, SessionKey
from companion.event_log import EventLog
from companion.services.context import ContextManager
from companion.services.dashboard import DashboardQueries
from companion.services.metrics import MetricsAggregator


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def key():
    return SessionKey("user-1", "session-1")


@pytest.fixture
def window():
    return WindowConfig()


@pytest.fixture
def store(window):
    return ConversationStore(window)


@pytest.fixture
def events():
    return EventLog(max_len=200)


@pytest.fixture
def context(store, events):
    manager = ContextManager(store=store, events=events)
    yield manager
    manager.shutdown()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics(events, clock):
    return MetricsAggregator(events=events, clock=clock)


@pytest.fixture
def dashboard(context, metrics, events):
    return DashboardQueries(context, metrics, events)


@pytest.fixture
def add_pairs():
    """Append user/assistant pairs; one pair per intensity value."""

    def _add(manager, session_key, intensities, category=None, start=None):
        ts = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        for i, intensity in enumerate(intensities):
            classification = Classification(category=category, confidence=0.9) if category else None
            manager.append_turn(
                session_key,
                "user",
                f"user message {i}",
                classification=classification,
                emotional_intensity=intensity,
                timestamp=ts + timedelta(minutes=2 * i),
            )
            manager.append_turn(
                session_key,
                "assistant",
                f"assistant reply {i}",
                timestamp=ts + timedelta(minutes=2 * i + 1),
            )

    return _add
