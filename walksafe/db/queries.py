"""
Database query functions for services and batch jobs.

All functions take an explicit AsyncSession; transaction boundaries
belong to the caller.
"""

import math
import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from walksafe.db.models import (
    AggregatedStatistic,
    AlertPreference,
    CrimeType,
    ExternalMapping,
    NavigationSession,
    Occurrence,
    Region,
    RiskIndex,
)
from walksafe.enums import OccurrenceSource, OccurrenceStatus
from walksafe.geo import EARTH_RADIUS_M, Coordinates

# ── Regions ──────────────────────────────────────────────────────────────


async def get_region(session: AsyncSession, region_id: int) -> Optional[Region]:
    return await session.get(Region, region_id)


async def get_region_ids_page(
    session: AsyncSession, after_id: int, limit: int
) -> Sequence[int]:
    """Keyset page of region ids strictly greater than after_id, ascending."""
    result = await session.execute(
        select(Region.id).where(Region.id > after_id).order_by(Region.id).limit(limit)
    )
    return result.scalars().all()


async def get_regions_covering(session: AsyncSession, point: Coordinates) -> Sequence[Region]:
    """Regions whose bounding box contains the point (candidates for polygon test)."""
    result = await session.execute(
        select(Region)
        .where(
            and_(
                Region.min_lat <= point.latitude,
                Region.max_lat >= point.latitude,
                Region.min_lng <= point.longitude,
                Region.max_lng >= point.longitude,
            )
        )
        .order_by(Region.id)
    )
    return result.scalars().all()


async def get_risk_index(session: AsyncSession, region_id: int) -> Optional[RiskIndex]:
    result = await session.execute(select(RiskIndex).where(RiskIndex.region_id == region_id))
    return result.scalar_one_or_none()


# ── Occurrences ──────────────────────────────────────────────────────────


async def get_scoring_occurrences(
    session: AsyncSession, region_id: int, since: datetime, now: datetime
) -> Sequence[Occurrence]:
    """
    Occurrences that count towards a region's risk:
    active, inside the window, and (for collaborative reports) not yet expired.
    """
    result = await session.execute(
        select(Occurrence)
        .where(
            and_(
                Occurrence.region_id == region_id,
                Occurrence.status == OccurrenceStatus.ACTIVE.value,
                Occurrence.timestamp >= since,
                Occurrence.timestamp <= now,
                or_(
                    Occurrence.source == OccurrenceSource.OFFICIAL.value,
                    Occurrence.expires_at.is_(None),
                    Occurrence.expires_at > now,
                ),
            )
        )
        .order_by(Occurrence.timestamp)
    )
    return result.scalars().all()


async def get_due_occurrences(
    session: AsyncSession, now: datetime, limit: int
) -> Sequence[Occurrence]:
    """Active occurrences whose expires_at has passed."""
    result = await session.execute(
        select(Occurrence)
        .where(
            and_(
                Occurrence.status == OccurrenceStatus.ACTIVE.value,
                Occurrence.expires_at.is_not(None),
                Occurrence.expires_at <= now,
            )
        )
        .order_by(Occurrence.expires_at, Occurrence.id)
        .limit(limit)
    )
    return result.scalars().all()


async def official_source_id_exists(session: AsyncSession, source_id: str) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(Occurrence)
        .where(
            and_(
                Occurrence.source == OccurrenceSource.OFFICIAL.value,
                Occurrence.source_id == source_id,
            )
        )
    )
    return result.scalar_one() > 0


async def find_nearby_occurrence(
    session: AsyncSession,
    crime_type_id: int,
    point: Coordinates,
    timestamp: datetime,
    distance_m: float,
    window: timedelta,
) -> Optional[Occurrence]:
    """Same crime type within distance_m and +/- window of timestamp."""
    dlat = math.degrees(distance_m / EARTH_RADIUS_M)
    cos_lat = max(math.cos(math.radians(point.latitude)), 1e-6)
    dlng = math.degrees(distance_m / (EARTH_RADIUS_M * cos_lat))
    result = await session.execute(
        select(Occurrence).where(
            and_(
                Occurrence.crime_type_id == crime_type_id,
                Occurrence.timestamp >= timestamp - window,
                Occurrence.timestamp <= timestamp + window,
                Occurrence.latitude.between(point.latitude - dlat, point.latitude + dlat),
                Occurrence.longitude.between(point.longitude - dlng, point.longitude + dlng),
            )
        )
    )
    for candidate in result.scalars().all():
        if point.distance_to(candidate.location) <= distance_m:
            return candidate
    return None


# ── Crime types ──────────────────────────────────────────────────────────


async def get_crime_type(session: AsyncSession, crime_type_id: int) -> Optional[CrimeType]:
    return await session.get(CrimeType, crime_type_id)


async def get_crime_type_ids(session: AsyncSession) -> Sequence[int]:
    result = await session.execute(select(CrimeType.id).order_by(CrimeType.id))
    return result.scalars().all()


async def find_default_crime_type(session: AsyncSession) -> Optional[CrimeType]:
    result = await session.execute(
        select(CrimeType)
        .where(func.lower(CrimeType.name).in_(["other", "outros"]))
        .order_by(CrimeType.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_external_mapping(
    session: AsyncSession, source: str, external_code: str
) -> Optional[ExternalMapping]:
    result = await session.execute(
        select(ExternalMapping).where(
            and_(
                ExternalMapping.source == source,
                ExternalMapping.external_code == external_code,
            )
        )
    )
    return result.scalar_one_or_none()


# ── Alert preferences ────────────────────────────────────────────────────


async def get_alert_preference(
    session: AsyncSession, user_id: uuid.UUID
) -> Optional[AlertPreference]:
    result = await session.execute(
        select(AlertPreference).where(AlertPreference.user_id == user_id)
    )
    return result.scalar_one_or_none()


# ── Anonymization ────────────────────────────────────────────────────────


async def anonymize_sessions_before(
    session: AsyncSession, threshold: datetime, now: datetime
) -> int:
    result = await session.execute(
        update(NavigationSession)
        .where(
            and_(
                NavigationSession.created_at < threshold,
                NavigationSession.user_id.is_not(None),
            )
        )
        .values(user_id=None, current_position=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def anonymize_occurrences_before(
    session: AsyncSession, threshold: datetime, now: datetime
) -> int:
    result = await session.execute(
        update(Occurrence)
        .where(
            and_(
                Occurrence.created_at < threshold,
                Occurrence.created_by.is_not(None),
            )
        )
        .values(created_by=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def anonymize_user_sessions(session: AsyncSession, user_id: uuid.UUID, now: datetime) -> int:
    result = await session.execute(
        update(NavigationSession)
        .where(NavigationSession.user_id == user_id)
        .values(user_id=None, current_position=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def anonymize_user_occurrences(session: AsyncSession, user_id: uuid.UUID, now: datetime) -> int:
    result = await session.execute(
        update(Occurrence)
        .where(Occurrence.created_by == user_id)
        .values(created_by=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def aggregate_by_region_crime_type(
    session: AsyncSession, min_count: int, before: Optional[datetime] = None,
    region_id: Optional[int] = None,
) -> Sequence:
    """(region_id, crime_type_id, count, avg_confidence) groups with count >= min_count."""
    stmt = (
        select(
            Occurrence.region_id,
            Occurrence.crime_type_id,
            func.count().label("occurrence_count"),
            func.avg(Occurrence.confidence_score).label("avg_confidence"),
        )
        .where(Occurrence.region_id.is_not(None))
        .group_by(Occurrence.region_id, Occurrence.crime_type_id)
        .having(func.count() >= min_count)
        .order_by(Occurrence.region_id, Occurrence.crime_type_id)
    )
    if before is not None:
        stmt = stmt.where(Occurrence.created_at < before)
    if region_id is not None:
        stmt = stmt.where(Occurrence.region_id == region_id)
    result = await session.execute(stmt)
    return result.all()


async def aggregate_by_time_bucket(
    session: AsyncSession, field: str, min_count: int,
    before: Optional[datetime] = None, region_id: Optional[int] = None,
) -> Sequence:
    """(bucket, count) groups by extract(field) on the occurrence timestamp."""
    bucket = func.extract(field, Occurrence.timestamp)
    stmt = (
        select(bucket.label("bucket"), func.count().label("occurrence_count"))
        .group_by(bucket)
        .having(func.count() >= min_count)
        .order_by(bucket)
    )
    if before is not None:
        stmt = stmt.where(Occurrence.created_at < before)
    if region_id is not None:
        stmt = stmt.where(Occurrence.region_id == region_id)
    result = await session.execute(stmt)
    return result.all()


async def replace_aggregated_statistics(
    session: AsyncSession, kind: str, rows: list[AggregatedStatistic]
) -> None:
    """Swap the stored cohorts of one kind for a fresh set."""
    existing = await session.execute(
        select(AggregatedStatistic).where(AggregatedStatistic.kind == kind)
    )
    for stale in existing.scalars().all():
        await session.delete(stale)
    session.add_all(rows)
