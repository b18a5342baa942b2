"""
Shared Test Fixtures
====================

In-memory SQLite (aiosqlite) database with the real models, a pipeline
bound to it, and an ``httpx.AsyncClient`` over the ASGI app with database
and pipeline dependencies overridden.
"""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("INTERNAL_API_KEY", "internal-test-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("APPSTORE_VERIFY_SIGNATURES", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("WEBHOOK_INGEST_MODE", "inline")
os.environ.setdefault("PROVIDER_BACKOFF_BASE_SECONDS", "0")

from typing import AsyncGenerator
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from entitlement_engine.config import settings
from entitlement_engine.db.base import Base
from entitlement_engine.db.session import build_session_factory, get_db
from entitlement_engine.dependencies import get_pipeline
import entitlement_engine.models  # noqa: F401
from entitlement_engine.services.pipeline import EntitlementPipeline
from entitlement_engine.services.state_machine import LifecyclePolicy
from factories import FakeClock


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline(session_factory, clock) -> EntitlementPipeline:
    return EntitlementPipeline(
        session_factory=session_factory,
        policy=LifecyclePolicy(),
        clock=clock,
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


def make_token(user_id: uuid.UUID) -> str:
    return jwt.encode(
        {"sub": str(user_id), "type": "access"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


@pytest_asyncio.fixture
async def client(session_factory, pipeline) -> AsyncGenerator[AsyncClient, None]:
    from entitlement_engine.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
