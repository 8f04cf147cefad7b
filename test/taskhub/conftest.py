"""
Shared fixtures for the TaskHub test suite.

Provides an isolated SQLite database per test seeded with users of every
role, an in-memory recording transport standing in for WebSocket channels,
and the lifecycle managers wired to both.
"""

import os
import sys
from typing import Any, Dict, List, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from taskhub.analytics import AnalyticsEngine
from taskhub.config import Settings
from taskhub.database import TaskDatabase
from taskhub.identity import IdentityProvider
from taskhub.models import Actor, Role
from taskhub.monitoring import PerformanceMonitor
from taskhub.notifications import ChannelRegistry, NotificationDispatcher, NotificationTransport
from taskhub.tasks import TaskLifecycleManager
from taskhub.teams import TeamLifecycleManager
from taskhub.users import UserDirectory

TEST_JWT_SECRET = "test-secret-with-enough-length-for-hs256"

SEED_USERS = [
    ("admin", "admin@example.com", Role.ADMIN),
    ("manager", "manager@example.com", Role.MANAGER),
    ("manager2", "manager2@example.com", Role.MANAGER),
    ("alice", "alice@example.com", Role.USER),
    ("bob", "bob@example.com", Role.USER),
    ("carol", "carol@example.com", Role.USER),
]


class RecordingTransport(NotificationTransport):
    """Transport that records deliveries instead of writing to a socket."""

    def __init__(self):
        self.sent: List[Tuple[Any, str, Dict[str, Any]]] = []
        self.failing_handles = set()

    async def deliver(self, handle, event, payload):
        if handle in self.failing_handles:
            raise ConnectionError(f"channel {handle} is closed")
        self.sent.append((handle, event, payload))

    def events_for(self, handle) -> List[str]:
        return [event for h, event, _ in self.sent if h == handle]

    def events(self, event: str) -> List[Tuple[Any, Dict[str, Any]]]:
        return [(h, payload) for h, e, payload in self.sent if e == event]


@pytest.fixture
def settings(tmp_path):
    return Settings(database_path=str(tmp_path / "taskhub_test.db"), jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def db(settings):
    database = TaskDatabase(settings.database_path)
    yield database
    database.close()


@pytest.fixture
def users(db) -> Dict[str, int]:
    """Seeded user ids keyed by username."""
    return {
        username: db.create_user(username, email, role)
        for username, email, role in SEED_USERS
    }


@pytest.fixture
def actors(users) -> Dict[str, Actor]:
    roles = {username: role for username, _, role in SEED_USERS}
    return {name: Actor(id=user_id, role=roles[name]) for name, user_id in users.items()}


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def registry():
    return ChannelRegistry()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(registry, transport, monitor):
    return NotificationDispatcher(registry, transport, monitor)


@pytest.fixture
def connected(registry, users) -> Dict[str, str]:
    """Register a channel for every seeded user; returns handle per username."""
    handles = {}
    for name, user_id in users.items():
        handles[name] = f"ws-{name}"
        registry.register(user_id, handles[name])
    return handles


@pytest.fixture
def task_manager(db, dispatcher):
    return TaskLifecycleManager(db, dispatcher)


@pytest.fixture
def team_manager(db, dispatcher):
    return TeamLifecycleManager(db, dispatcher)


@pytest.fixture
def analytics(db):
    return AnalyticsEngine(db)


@pytest.fixture
def directory(db, dispatcher):
    return UserDirectory(db, dispatcher)


@pytest.fixture
def identity(db, settings):
    return IdentityProvider(db, settings)
