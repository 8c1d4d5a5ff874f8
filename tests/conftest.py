from collections.abc import AsyncGenerator

from fakeredis import aioredis
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from launchpad.database import create_session_factory, create_tables
from launchpad.progress import ProgressBroadcaster
from launchpad.store import ProjectStore

# Single shared connection so every session sees the same in-memory database
DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def redis_client():
    redis = aioredis.FakeRedis(decode_responses=True)
    yield redis
    await redis.close()


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine) -> ProjectStore:
    return ProjectStore(create_session_factory(db_engine))


@pytest.fixture
async def broadcaster(redis_client) -> AsyncGenerator[ProgressBroadcaster, None]:
    broadcaster = ProgressBroadcaster(redis_client)
    yield broadcaster
    await broadcaster.stop()


@pytest.fixture
def progress_events(broadcaster):
    """Every event emitted through ``broadcaster``, captured locally in order."""
    events = []
    original = broadcaster.emit

    async def capture(project_id, progress, stage, message=""):
        events.append((progress, stage, message))
        await original(project_id, progress, stage, message)

    broadcaster.emit = capture
    return events


@pytest.fixture
async def project(store):
    return await store.create_project("user-1", "Todo App", description="A simple todo list")


@pytest.fixture
async def user_message(store, project):
    return await store.append_message(
        "conv-1", "user", "Build me a todo app with a home page", project_id=project.id
    )
