"""
Test fixtures for WalkSafe.

Provides:
- Async DB engine/session factory (SQLite in-memory, fresh per test)
- A frozen, advanceable clock
- Data factories for crime types, regions and occurrences
"""

import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ["TRAFFIC_CACHE_BACKEND"] = "memory"

from walksafe.db.engine import Base  # noqa: E402
from walksafe.db.models import CrimeType, Occurrence, Region  # noqa: E402
from walksafe.enums import OccurrenceSource, OccurrenceStatus  # noqa: E402
from walksafe.geo import rectangle  # noqa: E402

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# Wednesday, mid-day
NOW = datetime(2024, 3, 13, 12, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ── Database ─────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    """In-memory database with all tables."""
    eng = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Factories ────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def make_crime_type(session_factory):
    async def _make(name: str = "Robbery", code: str | None = None) -> CrimeType:
        async with session_factory() as session:
            crime_type = CrimeType(name=name, code=code)
            session.add(crime_type)
            await session.commit()
            return crime_type

    return _make


@pytest_asyncio.fixture
async def make_region(session_factory):
    async def _make(
        name: str = "Centro",
        south: float = -23.56,
        west: float = -46.65,
        north: float = -23.54,
        east: float = -46.63,
        **kwargs,
    ) -> Region:
        async with session_factory() as session:
            region = Region.from_boundary(name, rectangle(south, west, north, east), **kwargs)
            session.add(region)
            await session.commit()
            return region

    return _make


@pytest_asyncio.fixture
async def make_occurrence(session_factory):
    async def _make(
        region: Region | None,
        crime_type_id: int,
        timestamp: datetime = NOW,
        severity: str = "medium",
        confidence_score: int = 2,
        source: str = OccurrenceSource.COLLABORATIVE.value,
        status: str = OccurrenceStatus.ACTIVE.value,
        expires_at: datetime | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        **kwargs,
    ) -> Occurrence:
        if latitude is None or longitude is None:
            latitude = (region.min_lat + region.max_lat) / 2
            longitude = (region.min_lng + region.max_lng) / 2
        async with session_factory() as session:
            occurrence = Occurrence(
                latitude=latitude,
                longitude=longitude,
                crime_type_id=crime_type_id,
                severity=severity,
                confidence_score=confidence_score,
                source=source,
                status=status,
                expires_at=expires_at,
                region_id=region.id if region is not None else None,
                timestamp=timestamp,
                created_at=kwargs.pop("created_at", timestamp),
                **kwargs,
            )
            session.add(occurrence)
            await session.commit()
            return occurrence

    return _make
