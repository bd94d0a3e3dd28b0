"""Pytest configuration and fixtures."""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.persistence.database import Base
from app.persistence.models import *  # noqa: F401, F403
from app.persistence.repositories.tenant_bot_config_repository import TenantBotConfigRepository
from app.persistence.repositories.tenant_repository import TenantRepository


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so that several sessions see the same data."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory configured like the application's."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def tenant(db_session):
    """An active tenant."""
    unique_id = uuid.uuid4().hex[:8]
    return await TenantRepository(db_session).create(None, name="Test Tenant", subdomain=f"test-{unique_id}")


@pytest.fixture
async def keyword_config(db_session, tenant):
    """Bot config with one text rule: "hi" -> "Welcome!"."""
    return await TenantBotConfigRepository(db_session).set_values(
        tenant.id,
        keyword_replies=[{"keyword": "hi", "replyType": "text", "message": "Welcome!"}],
    )
