"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from odometer_guard.alerter.manager import FraudAlertManager
from odometer_guard.storage.database import DatabaseManager
from odometer_guard.storage.models import Base
from odometer_guard.trust.engine import TrustScoreEngine
from odometer_guard.validator.mileage import MileageValidator


@pytest.fixture
async def async_engine(tmp_path):
    """Create an async SQLite engine backed by a file, so sessions can run concurrently."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'odometer.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for repository tests."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db(async_engine) -> DatabaseManager:
    return DatabaseManager(engine=async_engine)


@pytest.fixture
def trust_engine(db: DatabaseManager) -> TrustScoreEngine:
    return TrustScoreEngine(db.get_async_session)


@pytest.fixture
def alert_manager(db: DatabaseManager) -> FraudAlertManager:
    return FraudAlertManager(db.get_async_session)


@pytest.fixture
def validator(
    db: DatabaseManager, trust_engine: TrustScoreEngine, alert_manager: FraudAlertManager
) -> MileageValidator:
    return MileageValidator(db.get_async_session, trust_engine, alert_manager)


@pytest.fixture
def noon() -> datetime:
    """A fixed mid-day reading time (outside the end-of-day window)."""
    return datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
