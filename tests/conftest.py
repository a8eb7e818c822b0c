from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from prep_tracker.config import Settings
from prep_tracker.errors import NetworkUnavailable
from prep_tracker.store import LocalStore
from prep_tracker.tracker import build_tracker

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the store, resolver and tracker."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProgressService:
    """In-memory ProgressService. Methods named in ``failing`` raise ``error``."""

    def __init__(self):
        self.progress = {}
        self.settings = {}
        self.activity = []
        self.calls = []
        self.failing = set()
        self.error = NetworkUnavailable("server unreachable")

    def _check(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise self.error

    async def fetch_progress(self, user_id):
        self._check("fetch_progress")
        doc = self.progress.get(user_id)
        return doc.model_copy(deep=True) if doc else None

    async def push_progress(self, user_id, document):
        self._check("push_progress")
        self.progress[user_id] = document.model_copy(deep=True)

    async def fetch_settings(self, user_id):
        self._check("fetch_settings")
        settings = self.settings.get(user_id)
        return settings.model_copy(deep=True) if settings else None

    async def push_settings(self, user_id, settings):
        self._check("push_settings")
        self.settings[user_id] = settings.model_copy(deep=True)

    async def push_activity(self, user_id, operation, payload):
        self._check("push_activity")
        self.activity.append((user_id, operation, payload))

    async def aclose(self):
        pass


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary SQLite database path for tests."""
    db_path = str(tmp_path / "test_tracker.db")
    return db_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service():
    return FakeProgressService()


@pytest.fixture
def config(tmp_db):
    return Settings(_env_file=None, db_path=tmp_db)


@pytest_asyncio.fixture
async def store(tmp_db, clock):
    store = LocalStore(tmp_db, clock=clock)
    await store.init()
    return store


@pytest_asyncio.fixture
async def tracker(config, service, clock):
    tracker = build_tracker(config, service=service, clock=clock)
    await tracker.initialize("42")
    return tracker
