"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file through aiosqlite. Every test
gets freshly created tables and a new engine in its own event loop.
"""

import os
import tempfile
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Configure BEFORE importing the app: NullPool, SQLite, simulated SMS
_DB_DIR = tempfile.mkdtemp(prefix="serenity-crisis-tests-")
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["SMS_ACCOUNT_SID"] = ""
os.environ["OPERATOR_PHONE_NUMBER"] = ""
os.environ["ESCALATION_SWEEP_ENABLED"] = "false"

from serenity_crisis.config import settings

settings.testing = True

from serenity_crisis.database import get_engine, get_session_maker, reset_database
from serenity_crisis.main import app
from serenity_crisis.models import Base, Responder, ResponderRole
from serenity_crisis.services.support_directory import invalidate_directory_cache

AddResponder = Callable[..., Awaitable[Responder]]


def random_phone() -> str:
    """A random US number in E.164 format."""
    return f"+1555{uuid.uuid4().int % 10**7:07d}"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Fast, deterministic settings for every test."""
    monkeypatch.setattr(settings, "sms_account_sid", "")
    monkeypatch.setattr(settings, "operator_phone_number", "")
    monkeypatch.setattr(settings, "sms_retry_base_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "directory_cache_ttl_seconds", 0.0)
    monkeypatch.setattr(settings, "escalation_window_seconds", 30)
    monkeypatch.setattr(settings, "escalation_urgent_window_seconds", 15)
    monkeypatch.setattr(settings, "escalation_max_tiers", 0)
    invalidate_directory_cache()
    yield settings
    invalidate_directory_cache()


@pytest_asyncio.fixture
async def db_engine():
    """Create all tables, and drop them again after the test."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await reset_database()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def add_responder(db_session) -> AddResponder:
    """Factory fixture inserting a support network member."""

    async def _add(
        patient_id: uuid.UUID,
        display_name: str = "Jordan",
        priority_tier: int = 1,
        position: int = 0,
        relationship: ResponderRole = ResponderRole.SUPPORTER,
        phone_number: str | None = None,
        is_active: bool = True,
    ) -> Responder:
        responder = Responder(
            patient_id=patient_id,
            display_name=display_name,
            phone_number=phone_number or random_phone(),
            relationship=relationship,
            priority_tier=priority_tier,
            position=position,
            is_active=is_active,
        )
        db_session.add(responder)
        await db_session.commit()
        return responder

    return _add
