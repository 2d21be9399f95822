"""Shared fixtures for the engine tests."""

from datetime import datetime, timezone

import pytest

from core.config import Settings
from core.database import Database
from services.execution.steps import LocalStepHandle


class RecordingPublisher:
    """Status publisher that keeps every (channel, payload) pair."""

    def __init__(self):
        self.messages = []

    def __call__(self, channel, payload):
        self.messages.append((channel, payload))

    def statuses(self, node_id):
        return [p["status"] for _, p in self.messages if p.get("nodeId") == node_id]


class FixedClock:
    """Mutable clock; tests move ``now`` forward by hand."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def publish():
    return RecordingPublisher()


@pytest.fixture
def step():
    return LocalStepHandle()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def memory_settings():
    return Settings(database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def database(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'flowline.db'}")
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()
