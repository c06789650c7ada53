"""
Shared fixtures: in-memory store with a controllable clock, an in-memory
SQLite database and an HTTP client wired to both.
"""
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_WHATSAPP_NUMBER"] = "+14155238886"
os.environ["TWILIO_SMS_NUMBER"] = "+14155550000"
os.environ["TWILIO_STATUS_CALLBACK_URL"] = "https://invites.example.com/api/whatsapp/webhook"
os.environ["WEBHOOK_PUBLIC_URL"] = "https://invites.example.com/api/whatsapp/webhook"
os.environ["SENTRY_DSN"] = ""
os.environ["RATE_LIMITS"] = "{}"

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from invite_dispatch.database import get_db
from invite_dispatch.dependencies.dispatch import get_store
from invite_dispatch.models.base import Base
from invite_dispatch.models.guest import Event, Guest
from invite_dispatch.models.invitation import Invitation  # noqa: F401
from invite_dispatch.models.template import MessageTemplate
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.kv_store import InMemoryStore
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.rate_limiter import RateLimiter
from invite_dispatch.services.retry_scheduler import RetryScheduler

class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def job_store(store):
    return JobStore(store, ttl_seconds=86400, lock_ttl_seconds=60)


@pytest.fixture
def queue(store, job_store):
    return PriorityQueue(store, job_store)


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, window_ms=1000, max_per_window=1, rules={}, clock=clock)


@pytest.fixture
def retry_scheduler(store, job_store, queue, clock):
    return RetryScheduler(store, job_store, queue, clock=clock)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def template(db):
    template = MessageTemplate(
        name="wedding_invite",
        display_name="Wedding invitation",
        content="Hi {{guest_name}}, you're invited to {{ event_name }}! {{rsvp_link}}",
        variables=["guest_name", "event_name"],
        is_approved=True,
        is_active=True,
    )
    db.add(template)
    await db.commit()
    return template


@pytest_asyncio.fixture
async def event_with_guests(db):
    event = Event(name="Ana & Ben")
    db.add(event)
    await db.flush()
    guests = [
        Guest(event_id=event.id, name="Carla", phone="+5511999990001"),
        Guest(event_id=event.id, name="Davi", phone="+5511999990002"),
        Guest(event_id=event.id, name="Elisa", phone=None),
    ]
    db.add_all(guests)
    await db.commit()
    return event, guests


@pytest_asyncio.fixture
async def client(session_factory, store):
    from invite_dispatch.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_store():
        return store

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = override_get_store
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
