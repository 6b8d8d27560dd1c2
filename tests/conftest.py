# giftguard/tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database per test, a FraudStore on top
of it and helpers to seed fraud signals at chosen times.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from giftguard.common.config import DefenseConfig
from giftguard.models import Base
from giftguard.models.base import utcnow
from giftguard.services.detector.schemas import FraudSignalCreate
from giftguard.services.detector.store import FraudStore


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'giftguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def config():
    return DefenseConfig()


@pytest.fixture
def store(session_factory):
    return FraudStore(session_factory)


@pytest.fixture
def seed_signals(store):
    """Insert ``count`` signals spaced one minute apart, ending ``minutes_ago`` minutes back."""

    async def _seed(count, minutes_ago=5, **fields):
        created = []
        now = utcnow()
        for i in range(count):
            signal = FraudSignalCreate(created_at=now - timedelta(minutes=minutes_ago + i), **fields)
            created.append(await store.create_fraud_log(signal))
        return created

    return _seed
