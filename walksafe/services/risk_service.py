"""
Risk Service: per-region risk index.

Factors (0-100 each), weighted into one bounded value:
    FREQUENCY  0.30  min(100, count / 10 * 50)
    RECENCY    0.25  mean(exp(-days / 7)) * 100, days = whole days since occurrence
    SEVERITY   0.25  mean(severity weight) * 100
    CONFIDENCE 0.20  sum(confidence) / (count * 5) * 100

Counted occurrences: ACTIVE, inside the trailing window, and for
collaborative reports only while unexpired.

The index is a pure function of the current occurrence set, so a
recomputation with unchanged inputs returns the identical value.
Recomputes of the same region are serialized per process.
"""

import asyncio
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.config import settings
from walksafe.db import queries
from walksafe.db.models import RiskIndex
from walksafe.enums import OccurrenceSeverity, RiskFactorType
from walksafe.exceptions import RegionNotFoundError
from walksafe.geo import Coordinates, RegionLookup
from walksafe.timeutils import Clock, utcnow

logger = structlog.get_logger(__name__)

FREQUENCY_SATURATION = 10
RECENCY_DECAY_DAYS = 7.0
MAX_CONFIDENCE = 5


class ScoredOccurrence(Protocol):
    timestamp: datetime
    severity: str
    confidence_score: int
    crime_type_id: int


@dataclass
class RiskComputation:
    region_id: int
    value: float
    occurrence_count: int
    dominant_crime_type_id: Optional[int]
    factors: dict[str, float] = field(default_factory=dict)
    calculated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "value": self.value,
            "occurrence_count": self.occurrence_count,
            "dominant_crime_type_id": self.dominant_crime_type_id,
            "factors": dict(self.factors),
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }


# ── Pure scoring ─────────────────────────────────────────────────────────


def calculate_factors(occurrences: list[ScoredOccurrence], now: datetime) -> dict[str, float]:
    count = len(occurrences)
    if count == 0:
        return {factor.value: 0.0 for factor in RiskFactorType}

    frequency = min(100.0, count / FREQUENCY_SATURATION * 50)

    decay = 0.0
    for occ in occurrences:
        days = max(0, int((now - occ.timestamp).total_seconds() // 86400))
        decay += math.exp(-days / RECENCY_DECAY_DAYS)
    recency = decay / count * 100

    severity = sum(
        OccurrenceSeverity.parse(occ.severity, default=OccurrenceSeverity.MEDIUM).weight
        for occ in occurrences
    ) / count * 100

    confidence = sum(int(occ.confidence_score) for occ in occurrences) / (count * MAX_CONFIDENCE) * 100

    return {
        RiskFactorType.FREQUENCY.value: frequency,
        RiskFactorType.RECENCY.value: recency,
        RiskFactorType.SEVERITY.value: severity,
        RiskFactorType.CONFIDENCE.value: confidence,
    }


def combine_factors(factors: dict[str, float]) -> float:
    value = sum(RiskFactorType(name).weight * score for name, score in factors.items())
    return round(min(100.0, max(0.0, value)), 2)


def dominant_crime_type(occurrences: Iterable[ScoredOccurrence]) -> Optional[int]:
    """Most frequent crime type; lowest id on a tie."""
    counts = Counter(occ.crime_type_id for occ in occurrences)
    if not counts:
        return None
    return min(counts, key=lambda ct: (-counts[ct], ct))


def score_occurrences(
    region_id: int, occurrences: list[ScoredOccurrence], now: datetime
) -> RiskComputation:
    factors = calculate_factors(occurrences, now)
    return RiskComputation(
        region_id=region_id,
        value=combine_factors(factors),
        occurrence_count=len(occurrences),
        dominant_crime_type_id=dominant_crime_type(occurrences),
        factors={name: round(score, 2) for name, score in factors.items()},
        calculated_at=now,
    )


def is_high_risk(value: float) -> bool:
    return value >= settings.risk_high_threshold


def requires_warning(value: float) -> bool:
    return value >= settings.risk_warning_threshold


# ── Service ──────────────────────────────────────────────────────────────


class RiskService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        region_lookup: Optional[RegionLookup] = None,
        clock: Clock = utcnow,
        window_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.region_lookup = region_lookup
        self.clock = clock
        self.window = timedelta(days=window_days or settings.risk_window_days)
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, region_id: int) -> asyncio.Lock:
        return self._locks.setdefault(region_id, asyncio.Lock())

    async def recalculate_region_risk(self, region_id: int) -> RiskComputation:
        """Recompute, persist and return one region's risk. Raises RegionNotFoundError."""
        async with self._lock_for(region_id):
            async with self.session_factory() as session:
                try:
                    result = await self._recalculate(session, region_id)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        logger.info(
            "risk_index_recalculated",
            region_id=region_id,
            value=result.value,
            occurrence_count=result.occurrence_count,
        )
        return result

    async def _recalculate(self, session: AsyncSession, region_id: int) -> RiskComputation:
        region = await queries.get_region(session, region_id)
        if region is None:
            raise RegionNotFoundError(region_id)

        now = self.clock()
        occurrences = list(
            await queries.get_scoring_occurrences(session, region_id, now - self.window, now)
        )
        result = score_occurrences(region_id, occurrences, now)

        region.risk_index = result.value
        region.occurrence_count = result.occurrence_count
        region.dominant_crime_type_id = result.dominant_crime_type_id
        region.last_recalculated_at = now

        snapshot = await queries.get_risk_index(session, region_id)
        if snapshot is None:
            snapshot = RiskIndex(region_id=region_id)
            session.add(snapshot)
        snapshot.value = result.value
        snapshot.occurrence_count = result.occurrence_count
        snapshot.dominant_crime_type_id = result.dominant_crime_type_id
        snapshot.factors = dict(result.factors)
        snapshot.calculated_at = now
        return result

    async def recalculate_all_regions(self, batch_size: Optional[int] = None) -> dict[str, Any]:
        """
        Recompute every region, paging by id. A failing region is logged and
        skipped; the batch always runs to the end.
        """
        batch_size = batch_size or settings.risk_batch_size
        processed = 0
        failed_region_ids: list[int] = []
        after_id = 0

        logger.info("risk_recalculation_started", batch_size=batch_size)
        while True:
            async with self.session_factory() as session:
                region_ids = list(await queries.get_region_ids_page(session, after_id, batch_size))
            if not region_ids:
                break

            for region_id in region_ids:
                try:
                    await self.recalculate_region_risk(region_id)
                    processed += 1
                except Exception as e:
                    failed_region_ids.append(region_id)
                    logger.error(
                        "region_risk_recalculation_failed",
                        region_id=region_id,
                        error=str(e),
                    )

            after_id = region_ids[-1]
            if len(region_ids) < batch_size:
                break

        logger.info(
            "risk_recalculation_completed",
            processed=processed,
            failed=len(failed_region_ids),
        )
        return {
            "processed": processed,
            "failed": len(failed_region_ids),
            "failed_region_ids": failed_region_ids,
        }

    # ── Read helpers ──────────────────────────────────────────────────

    async def get_risk_for_coordinates(self, coords: Coordinates) -> Optional[float]:
        """Risk index of the region containing coords; None outside every region."""
        if self.region_lookup is None:
            raise RuntimeError("RiskService was built without a region lookup")
        region = await self.region_lookup.find_region(coords)
        return None if region is None else float(region.risk_index)

    async def get_region_risk(self, region_id: int) -> Optional[RiskComputation]:
        async with self.session_factory() as session:
            snapshot = await queries.get_risk_index(session, region_id)
        if snapshot is None:
            return None
        return RiskComputation(
            region_id=snapshot.region_id,
            value=snapshot.value,
            occurrence_count=snapshot.occurrence_count,
            dominant_crime_type_id=snapshot.dominant_crime_type_id,
            factors=dict(snapshot.factors or {}),
            calculated_at=snapshot.calculated_at,
        )

    is_high_risk = staticmethod(is_high_risk)
    requires_warning = staticmethod(requires_warning)
