"""Pytest configuration: every test gets its own settings, database and storage tree under tmp_path."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from davbox.auth.tokens import pwd_context
from davbox.config import Settings
from davbox.db.session import Database
from davbox.gate import AccessGate
from davbox.users.models import UserCreate
from davbox.users.service import create_user

TEST_PASSWORD = "password123"


class FakeClock:
    """Settable UTC clock for session expiry tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True, scope="session")
def _fast_bcrypt():
    """Minimum bcrypt cost so password hashing does not dominate test time."""
    pwd_context.update(bcrypt__rounds=4)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_path_template=str(tmp_path / "storage" / "%s"),
        db_path=tmp_path / "db.sqlite",
        secret_key="test-secret-key-at-least-32-characters-long",
        enable_thumbnails=False,
        session_timeout_seconds=3600,
        session_sweep_interval_seconds=0,
        rate_limit_enabled=False,
        block_ios_clients=True,
        root_url="http://testserver/",
    )


@pytest_asyncio.fixture
async def database(settings):
    """Initialized metadata database for one test."""
    db = Database(settings.db_path)
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def gate(settings, database, clock) -> AccessGate:
    return AccessGate.from_settings(settings, database, clock=clock)


@pytest.fixture
def make_user(gate, database, settings):
    """Factory: provision a user (quota_limit=None means the default quota)."""

    async def _make(user_id: str = "alice", quota_limit=None, is_admin: bool = False):
        payload = UserCreate(
            id=user_id, password=TEST_PASSWORD, quota_limit=quota_limit, is_admin=is_admin
        )
        return await create_user(database, gate.store, settings, payload)

    return _make


@pytest.fixture
def login(gate):
    """Factory: log a user in and return the session token."""

    async def _login(user_id: str = "alice", password: str = TEST_PASSWORD) -> str:
        issued = await gate.authenticate(user_id, password)
        return issued.token

    return _login
