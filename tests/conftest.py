import pytest
from datetime import timedelta
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.models.base import Base, utcnow
import app.models.notification  # noqa: F401
import app.models.webhook  # noqa: F401
import app.models.settings  # noqa: F401
import app.models.preferences  # noqa: F401
import app.models.inbox  # noqa: F401
from app.models.notification import NotificationChannel
from app.services.channels.base import ChannelHandler, DeliveryResult
from app.services.settings_store import SettingValue
from app.services.store import SqlNotificationStore


class StaticSettingsProvider:
    """In-memory stand-in for the admin settings table."""

    def __init__(self, values=None):
        self.values = dict(values or {})

    def set(self, category, key, value):
        self.values[(category, key)] = value

    async def get_setting(self, category, key):
        if (category, key) not in self.values:
            return None
        return SettingValue(self.values[(category, key)])


class FakeClock:
    def __init__(self, now=None):
        # Ahead of real time so rows queued "now" are already due
        self.now = now or utcnow() + timedelta(minutes=1)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ScriptedHandler(ChannelHandler):
    """Returns (or raises) the queued outcomes in order."""

    def __init__(self, channel=NotificationChannel.EMAIL, outcomes=None, enabled=True):
        super().__init__(settings_provider=None)
        self.channel = channel
        self.outcomes = list(outcomes or [])
        self.enabled = enabled
        self.calls = []

    async def is_enabled(self):
        return self.enabled

    async def send(self, record):
        self.calls.append(record)
        outcome = self.outcomes.pop(0) if self.outcomes else DeliveryResult.ok()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return SqlNotificationStore(session_factory)


@pytest.fixture
def settings_provider():
    return StaticSettingsProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_user_lookup(mocker):
    user = {
        "user_id": "123e4567-e89b-12d3-a456-426614174000",
        "email": "test@example.com",
        "phone_number": "+251911123456",
        "name": "Test User",
    }
    mocker.patch("app.services.notification.get_user_details_from_user_management", return_value=user)
    return user
