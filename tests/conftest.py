"""
Shared fixtures for the workflow engine test suite
"""

import pytest
from datetime import datetime, timedelta, timezone

from grc_workflow.config import WorkflowSettings
from grc_workflow.events import EventDispatcher
from grc_workflow.storage import InMemoryStorage


class FakeClock:
    """Deterministic clock; every reading moves time forward by ``tick``"""

    def __init__(self, start=None, tick=timedelta(milliseconds=1)):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.tick = tick

    def __call__(self):
        current = self.now
        self.now = self.now + self.tick
        return current

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def settings():
    return WorkflowSettings(_env_file=None)


@pytest.fixture
def dispatcher(clock):
    return EventDispatcher(clock)


@pytest.fixture
def recorded_events(dispatcher):
    """Every event published on the test dispatcher, in order"""
    events = []
    dispatcher.subscribe_all(events.append)
    return events
