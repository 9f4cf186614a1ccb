"""
Test configuration and fixtures

In-memory aiosqlite database, engine services and an httpx client over
the FastAPI app.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Project root on sys.path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Test environment
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_FILE_OUTPUT"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["REDIS_ENABLED"] = "false"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from main import app as fastapi_app, configure_services
from models.calendar import EventRecord, Visibility
from models.database import Base
from services.event_bus_service import EventBusService
from services.event_store import EventStore
from services.relationship_oracle import StaticRelationshipOracle
from utils.jwt_auth import JWTManager


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_event(**overrides) -> EventRecord:
    """EventRecord with sensible defaults"""
    values = {
        "id": "evt_test",
        "title": "Test event",
        "start": utc(2025, 1, 6, 18, 0),
        "end": utc(2025, 1, 6, 19, 0),
        "owner_id": "alice",
        "visibility": Visibility.PUBLIC,
    }
    values.update(overrides)
    return EventRecord(**values)


# ============ Database fixtures ============


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def bus():
    return EventBusService()


@pytest.fixture
def event_store(session_factory, bus):
    return EventStore(session_factory, bus=bus)


@pytest.fixture
def static_oracle():
    """alice and bob are friends; carol belongs to the zen-circle community"""
    return StaticRelationshipOracle(
        friends=[("alice", "bob")],
        memberships=[("zen-circle", "carol")],
    )


# ============ API fixtures ============


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user id"""

    def _headers(user_id: str) -> dict:
        token = JWTManager.create_access_token(user_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest_asyncio.fixture
async def client(session_factory, static_oracle):
    """httpx client over the app wired to the test database"""
    notifier = configure_services(
        fastapi_app, session_factory=session_factory, oracle=static_oracle
    )
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    notifier.detach()
