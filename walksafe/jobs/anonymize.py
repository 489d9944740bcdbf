"""
Location data anonymization.

AnonymizeLocationData (periodic, one transaction):
1. strip user association from navigation sessions older than the threshold
2. strip created_by from occurrences older than the threshold
3. rebuild cohort statistics, keeping only groups of at least
   MIN_AGGREGATION_COUNT occurrences

Any failure rolls the whole run back.

Also: per-user erasure (anonymize_user_data) and live cohort statistics
for one region (get_anonymized_region_statistics).
"""

import uuid
from datetime import timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.config import settings
from walksafe.db import queries
from walksafe.db.models import AggregatedStatistic
from walksafe.timeutils import Clock, utcnow

logger = structlog.get_logger(__name__)

KIND_REGION_CRIME_TYPE = "region_crime_type"
KIND_HOUR_OF_DAY = "hour_of_day"
KIND_DAY_OF_WEEK = "day_of_week"


class AnonymizeLocationData:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        threshold_days: Optional[int] = None,
        min_aggregation_count: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.threshold_days = threshold_days or settings.anonymization_threshold_days
        self.min_count = min_aggregation_count or settings.min_aggregation_count
        self.clock = clock

    async def run(self) -> dict[str, Any]:
        now = self.clock()
        threshold = now - timedelta(days=self.threshold_days)
        logger.info("anonymization_started", threshold=threshold.isoformat(), min_count=self.min_count)

        async with self.session_factory() as session:
            try:
                sessions = await queries.anonymize_sessions_before(session, threshold, now)
                occurrences = await queries.anonymize_occurrences_before(session, threshold, now)
                aggregates = await self._rebuild_aggregates(session, now)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error("anonymization_failed", error=str(e))
                raise

        logger.info(
            "anonymization_completed",
            sessions_anonymized=sessions,
            occurrences_anonymized=occurrences,
            aggregates=aggregates,
        )
        return {
            "sessions_anonymized": sessions,
            "occurrences_anonymized": occurrences,
            "aggregates": aggregates,
        }

    async def _rebuild_aggregates(self, session: AsyncSession, now) -> dict[str, int]:
        by_region = [
            AggregatedStatistic(
                kind=KIND_REGION_CRIME_TYPE,
                region_id=row.region_id,
                crime_type_id=row.crime_type_id,
                occurrence_count=row.occurrence_count,
                avg_confidence=round(float(row.avg_confidence or 0), 2),
                computed_at=now,
            )
            for row in await queries.aggregate_by_region_crime_type(session, self.min_count)
        ]
        by_hour = [
            AggregatedStatistic(
                kind=KIND_HOUR_OF_DAY,
                bucket=int(row.bucket),
                occurrence_count=row.occurrence_count,
                computed_at=now,
            )
            for row in await queries.aggregate_by_time_bucket(session, "hour", self.min_count)
        ]
        by_day = [
            AggregatedStatistic(
                kind=KIND_DAY_OF_WEEK,
                bucket=int(row.bucket),
                occurrence_count=row.occurrence_count,
                computed_at=now,
            )
            for row in await queries.aggregate_by_time_bucket(session, "dow", self.min_count)
        ]

        await queries.replace_aggregated_statistics(session, KIND_REGION_CRIME_TYPE, by_region)
        await queries.replace_aggregated_statistics(session, KIND_HOUR_OF_DAY, by_hour)
        await queries.replace_aggregated_statistics(session, KIND_DAY_OF_WEEK, by_day)
        return {
            KIND_REGION_CRIME_TYPE: len(by_region),
            KIND_HOUR_OF_DAY: len(by_hour),
            KIND_DAY_OF_WEEK: len(by_day),
        }


async def anonymize_user_data(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID,
    clock: Clock = utcnow,
) -> dict[str, int]:
    """Erase one user's association from sessions and occurrences (one transaction)."""
    now = clock()
    async with session_factory() as session:
        try:
            sessions = await queries.anonymize_user_sessions(session, user_id, now)
            occurrences = await queries.anonymize_user_occurrences(session, user_id, now)
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error("user_anonymization_failed", user_id=str(user_id), error=str(e))
            raise

    logger.info(
        "user_data_anonymized",
        user_id=str(user_id),
        sessions=sessions,
        occurrences=occurrences,
    )
    return {"sessions_anonymized": sessions, "occurrences_anonymized": occurrences}


async def get_anonymized_region_statistics(
    session_factory: async_sessionmaker[AsyncSession],
    region_id: int,
    min_count: Optional[int] = None,
) -> dict[str, Any]:
    """Crime-type and hour-of-day cohorts for a region; small cohorts are withheld."""
    min_count = min_count or settings.min_aggregation_count
    async with session_factory() as session:
        crime_rows = await queries.aggregate_by_region_crime_type(
            session, min_count, region_id=region_id
        )
        hour_rows = await queries.aggregate_by_time_bucket(
            session, "hour", min_count, region_id=region_id
        )
    return {
        "region_id": region_id,
        "min_aggregation_count": min_count,
        "crime_types": [
            {
                "crime_type_id": row.crime_type_id,
                "count": row.occurrence_count,
                "avg_confidence": round(float(row.avg_confidence or 0), 2),
            }
            for row in crime_rows
        ],
        "hours": [{"hour": int(row.bucket), "count": row.occurrence_count} for row in hour_rows],
    }
