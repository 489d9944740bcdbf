"""
WalkSafe SQLAlchemy Models.

Uses compatibility types for SQLite (dev/tests) + PostgreSQL (prod).
Timestamps are naive UTC.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from walksafe.db.compat import GUID, IntSetType, JSONType
from walksafe.db.engine import Base
from walksafe.enums import OccurrenceSeverity, OccurrenceSource, OccurrenceStatus
from walksafe.geo import Coordinates, bounding_box, point_in_polygon
from walksafe.timeutils import sunday_based_weekday, to_minutes, utcnow


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# Regions & risk
# ──────────────────────────────────────────────────────────────────────────────


class Region(Base):
    """Fixed geographic polygon carrying an aggregate risk score. Written only by RiskService."""

    __tablename__ = "ws_regions"
    __table_args__ = (
        Index("ix_regions_bbox", "min_lat", "max_lat", "min_lng", "max_lng"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Closed ring of [lat, lng] pairs
    boundary: Mapped[list] = mapped_column(JSONType(), nullable=False)
    min_lat: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_lat: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    min_lng: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_lng: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_index: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dominant_crime_type_id: Mapped[Optional[int]] = mapped_column(Integer)
    last_recalculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @classmethod
    def from_boundary(cls, name: str, boundary: list[list[float]], **kwargs) -> "Region":
        """Build a region and fill its bounding box from the ring."""
        min_lat, max_lat, min_lng, max_lng = bounding_box(boundary)
        return cls(
            name=name,
            boundary=boundary,
            min_lat=min_lat,
            max_lat=max_lat,
            min_lng=min_lng,
            max_lng=max_lng,
            **kwargs,
        )

    def contains(self, point: Coordinates) -> bool:
        return point_in_polygon(point, self.boundary)


class RiskIndex(Base):
    """Latest risk snapshot per region. Replaced on every recomputation."""

    __tablename__ = "ws_risk_indexes"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    region_id: Mapped[int] = mapped_column(Integer, ForeignKey("ws_regions.id"), unique=True, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dominant_crime_type_id: Mapped[Optional[int]] = mapped_column(Integer)
    factors: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class CrimeType(Base):
    __tablename__ = "ws_crime_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), unique=True)


class ExternalMapping(Base):
    """Maps a source's crime code onto the internal taxonomy (ETL)."""

    __tablename__ = "ws_external_mappings"
    __table_args__ = (
        UniqueConstraint("source", "external_code", name="uq_external_mapping_source_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    external_code: Mapped[str] = mapped_column(String(100), nullable=False)
    external_name: Mapped[Optional[str]] = mapped_column(String(255))
    crime_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("ws_crime_types.id"), nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Occurrences
# ──────────────────────────────────────────────────────────────────────────────


class Occurrence(Base):
    """A reported crime incident (collaborative or official)."""

    __tablename__ = "ws_occurrences"
    __table_args__ = (
        Index("ix_occurrences_region_status_ts", "region_id", "status", "timestamp"),
        Index("ix_occurrences_source_id", "source", "source_id"),
        Index("ix_occurrences_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    crime_type_id: Mapped[int] = mapped_column(Integer, ForeignKey("ws_crime_types.id"), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default=OccurrenceSeverity.MEDIUM.value)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=OccurrenceSource.COLLABORATIVE.value)
    source_id: Mapped[Optional[str]] = mapped_column(String(128))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    region_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("ws_regions.id"))
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OccurrenceStatus.ACTIVE.value)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def location(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)

    @property
    def severity_enum(self) -> OccurrenceSeverity:
        return OccurrenceSeverity.parse(self.severity, default=OccurrenceSeverity.MEDIUM)

    def is_official(self) -> bool:
        return self.source == OccurrenceSource.OFFICIAL

    def mark_as_expired(self, now: Optional[datetime] = None) -> None:
        self.status = OccurrenceStatus.EXPIRED.value
        self.updated_at = now or utcnow()


# ──────────────────────────────────────────────────────────────────────────────
# Users' data (identity lives in an external service)
# ──────────────────────────────────────────────────────────────────────────────


class NavigationSession(Base):
    __tablename__ = "ws_navigation_sessions"
    __table_args__ = (
        Index("ix_navigation_sessions_created_at", "created_at"),
        Index("ix_navigation_sessions_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    # {"lat": .., "lng": ..}
    current_position: Mapped[Optional[dict]] = mapped_column(JSONType())
    origin: Mapped[Optional[dict]] = mapped_column(JSONType())
    destination: Mapped[Optional[dict]] = mapped_column(JSONType())
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class AggregatedStatistic(Base):
    """Anonymized cohort counts (only groups at or above the minimum cohort size)."""

    __tablename__ = "ws_aggregated_statistics"
    __table_args__ = (
        Index("ix_aggregated_statistics_kind", "kind", "region_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    # "region_crime_type" | "hour_of_day" | "day_of_week"
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    region_id: Mapped[Optional[int]] = mapped_column(Integer)
    crime_type_id: Mapped[Optional[int]] = mapped_column(Integer)
    bucket: Mapped[Optional[int]] = mapped_column(Integer)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_confidence: Mapped[Optional[float]] = mapped_column(Float)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# Alert preferences
# ──────────────────────────────────────────────────────────────────────────────


ALL_DAYS = list(range(7))
WEEKEND_DAYS = [0, 6]


class AlertPreference(Base):
    """
    Per-user alert gating.

    - enabled_crime_types: empty = every crime type enabled
    - active_hours_start/end: "HH:MM"; either null = always active;
      start > end is an overnight range (active when now >= start OR now < end)
    - active_days: 0 = Sunday ... 6 = Saturday; empty = every day
    """

    __tablename__ = "ws_alert_preferences"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), unique=True, nullable=False)
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enabled_crime_types: Mapped[list] = mapped_column(IntSetType(), nullable=False, default=list)
    active_hours_start: Mapped[Optional[str]] = mapped_column(String(5))
    active_hours_end: Mapped[Optional[str]] = mapped_column(String(5))
    active_days: Mapped[list] = mapped_column(IntSetType(), nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("alerts_enabled", True)
        kwargs["enabled_crime_types"] = sorted({int(v) for v in kwargs.get("enabled_crime_types") or []})
        kwargs["active_days"] = sorted({int(v) for v in kwargs.get("active_days") or []})
        super().__init__(**kwargs)

    # ── Crime type filter ─────────────────────────────────────────────

    def is_crime_type_enabled(self, crime_type_id: int) -> bool:
        if not self.enabled_crime_types:
            return True
        return int(crime_type_id) in self.enabled_crime_types

    def enable_crime_type(self, crime_type_id: int) -> None:
        self.enabled_crime_types = sorted(set(self.enabled_crime_types or []) | {int(crime_type_id)})

    def disable_crime_type(self, crime_type_id: int, all_crime_type_ids: Optional[list[int]] = None) -> None:
        """
        Remove a crime type. An empty set means "all", so disabling from the
        empty set needs the full catalogue to expand it first.
        """
        current = set(self.enabled_crime_types or [])
        if not current:
            if not all_crime_type_ids:
                raise ValueError("all_crime_type_ids is required to disable from the implicit 'all' set")
            current = {int(c) for c in all_crime_type_ids}
        current.discard(int(crime_type_id))
        self.enabled_crime_types = sorted(current)

    # ── Schedule filter ───────────────────────────────────────────────

    def set_active_hours(self, start: Optional[str], end: Optional[str]) -> None:
        """Set the "HH:MM" window; pass None for both to make alerts always active."""
        for value in (start, end):
            if value is not None:
                to_minutes(value)
        self.active_hours_start = start
        self.active_hours_end = end

    def set_active_days(self, days: list[int]) -> None:
        cleaned = {int(d) for d in days}
        invalid = [d for d in cleaned if d < 0 or d > 6]
        if invalid:
            raise ValueError(f"Invalid day(s) {sorted(invalid)}: expected 0 (Sunday) .. 6 (Saturday)")
        self.active_days = sorted(cleaned)

    def configure_night_only(self) -> None:
        self.set_active_hours("22:00", "06:00")

    def configure_weekends_only(self) -> None:
        self.set_active_days(WEEKEND_DAYS)

    def is_day_active(self, moment: datetime) -> bool:
        if not self.active_days:
            return True
        return sunday_based_weekday(moment) in self.active_days

    def is_hour_active(self, moment: datetime) -> bool:
        if self.active_hours_start is None or self.active_hours_end is None:
            return True
        start = to_minutes(self.active_hours_start)
        end = to_minutes(self.active_hours_end)
        now = moment.hour * 60 + moment.minute
        if start > end:
            return now >= start or now < end
        return start <= now <= end

    def is_active_at(self, moment: datetime) -> bool:
        return self.is_day_active(moment) and self.is_hour_active(moment)

    def should_alert(self, crime_type_id: Optional[int], moment: datetime) -> bool:
        if not self.alerts_enabled:
            return False
        if not self.is_active_at(moment):
            return False
        if crime_type_id is not None and not self.is_crime_type_enabled(crime_type_id):
            return False
        return True

    def get_configuration_summary(self) -> dict[str, Any]:
        return {
            "alerts_enabled": self.alerts_enabled,
            "crime_types": "all" if not self.enabled_crime_types else list(self.enabled_crime_types),
            "active_hours": (
                "always"
                if self.active_hours_start is None or self.active_hours_end is None
                else f"{self.active_hours_start}-{self.active_hours_end}"
            ),
            "active_days": "all" if not self.active_days else list(self.active_days),
        }
