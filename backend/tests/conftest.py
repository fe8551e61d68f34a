"""
Pytest-Konfiguration mit In-Memory SQLite fuer die Primaerdatenbank,
temporaerer FTS5-Datei fuer den Suchindex und fakeredis fuer Presence.
"""
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from parley.api.deps import get_presence_tracker, get_publisher, get_search_sync_worker
from parley.database import get_db
from parley.main import app
from parley.models.base import Base
from parley.models.user import User
from parley.services.auth import create_access_token
from parley.services.presence import PresenceTracker, RedisPresenceStore
from parley.services.search_index import init_search_db
from parley.services.search_sync import SearchSyncWorker

# In-memory SQLite fuer PostgreSQL-Ersatz im Test
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def search_db(tmp_path, monkeypatch):
    path = str(tmp_path / "search" / "messages.db")
    monkeypatch.setattr("parley.config.settings.search_db_path", path)
    await init_search_db()
    return path


class RecordingPublisher:
    """Merkt sich alle veroeffentlichten Events in Reihenfolge."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event_type: str, payload: dict) -> None:
        self.events.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def publisher():
    return RecordingPublisher()


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def presence(redis_client, clock):
    return PresenceTracker(RedisPresenceStore(redis_client), clock=clock, window_seconds=300)


@pytest_asyncio.fixture
async def client(session_maker, search_db, publisher, presence):
    """AsyncClient der FastAPI-App mit ueberschriebenen Dependencies."""

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_presence_tracker] = lambda: presence
    app.dependency_overrides[get_search_sync_worker] = lambda: SearchSyncWorker(session_maker)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_user(session_maker, username: str, display_name: str | None = None) -> uuid.UUID:
    """Hilfsfunktion: Legt einen Benutzer direkt in der DB an und gibt die ID zurueck."""
    async with session_maker() as session:
        user = User(username=username, display_name=display_name or username.title())
        session.add(user)
        await session.commit()
        return user.id


def auth_headers(user_id: uuid.UUID) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}
