"""
Pytest fixtures for LockGate tests.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure test config is set before importing lockgate modules.
os.environ.setdefault("LOCKGATE_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("LOCKGATE_ENV", "development")
os.environ.setdefault("LOCKGATE_DATABASE_URL", "sqlite+aiosqlite:///./lockgate_test.db")

from lockgate.config import Environment, Settings
from lockgate.db.base import Base, Database
import lockgate.db.tables  # noqa: F401
from lockgate.engine import LockManager
from lockgate.realtime.hub import NotificationHub
from lockgate.services import LockServices

pytest_plugins = ("pytest_asyncio",)

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, minutes=minutes)
        return self.now


class RecordingPublisher:
    """EventPublisher that keeps every published event."""

    def __init__(self):
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)

    def names(self) -> list[tuple[str, str]]:
        return [(e.event.value, e.record_id) for e in self.events]


def _ensure_test_database_url(database_url: str) -> None:
    if database_url.startswith("postgresql") and "test" not in database_url:
        raise RuntimeError(
            "Refusing to run LockGate tests against a non-test database. "
            "Set LOCKGATE_TEST_DATABASE_URL to a dedicated test database."
        )


@pytest.fixture
def database_url(tmp_path) -> str:
    url = os.getenv("LOCKGATE_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'lockgate.db'}"
    _ensure_test_database_url(url)
    return url


@pytest.fixture
def test_settings(database_url) -> Settings:
    return Settings(
        env=Environment.DEVELOPMENT,
        allow_insecure_dev=True,
        database_url=database_url,
        jwt_secret="test-secret",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def database(database_url):
    """Fresh schema per test."""
    db = Database(database_url)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
async def session(database):
    """Provide a database session per test."""
    async with database.session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def manager(session, publisher, clock) -> LockManager:
    return LockManager(
        session,
        publisher,
        lease_duration_seconds=300,
        cross_session=True,
        clock=clock,
    )


@pytest.fixture
def services(test_settings, database, clock) -> LockServices:
    return LockServices(
        settings=test_settings,
        database=database,
        hub=NotificationHub(metrics_throttle_seconds=test_settings.metrics_throttle_seconds),
        clock=clock,
    )


@pytest.fixture
def app(services):
    from lockgate.main import create_app

    return create_app(settings=services.settings, services=services, run_background_tasks=False)


@pytest.fixture
async def client(app):
    """Async test client against the in-process app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
