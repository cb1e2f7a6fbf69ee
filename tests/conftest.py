"""
Shared test fixtures.

These replace real infrastructure with lightweight in-memory alternatives:
- PostgreSQL → SQLite in memory (one shared connection via StaticPool,
  so worker threads see the same database)
- Redis → fakeredis (pure Python Redis mock); flip `redis_server.connected`
  to simulate an outage
- HTTP server → httpx.AsyncClient with ASGI transport (no network)
- Wall clock → FakeClock, advanced explicitly by the test

This means tests:
- Run without Docker
- Run in milliseconds (no network, no disk)
- Are fully isolated (each test gets a fresh database and Redis)
"""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models.base import Base
from api.main import create_app
from api.dependencies import get_job_system
from broker.redis_queue import RedisJobQueue
from jobs.registry import build_default_registry
from outbox.service import OutboxService
from scheduler.runtime import JobSystem

TEST_DB_URL = "sqlite://"


class FakeClock:
    """Callable clock returning a fixed UTC time until advanced."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(redis_server):
    """Create a fake Redis instance (in-memory, no real Redis needed)."""
    r = fakeredis.FakeRedis(server=redis_server)
    yield r
    redis_server.connected = True
    r.flushall()


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def outbox(session_factory, registry, clock):
    return OutboxService(session_factory, registry, clock=clock)


@pytest.fixture
def broker(fake_redis, clock):
    return RedisJobQueue(fake_redis, name="testjobs", clock=clock.timestamp)


@pytest.fixture
def job_system(session_factory, broker, registry, clock):
    system = JobSystem(session_factory, broker, registry=registry, clock=clock)
    yield system
    system.promoter.stop()
    system.sweeper.stop()


@pytest_asyncio.fixture
async def client(job_system):
    """
    Create a test HTTP client that talks directly to the FastAPI app.

    dependency_overrides swaps the JobSystem the lifespan would build
    (PostgreSQL + real Redis) for the in-memory one above. ASGITransport
    does not run the lifespan, so nothing touches real infrastructure.
    """
    app = create_app()
    app.dependency_overrides[get_job_system] = lambda: job_system

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
