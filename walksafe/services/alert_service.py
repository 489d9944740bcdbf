"""
Alert Service: real-time navigation alerts.

- calculate_alert_distance: look-ahead radius that grows with speed
- check_alert_conditions: alert when the current region is high-risk
- check_approaching_alerts: alert for high-risk regions ahead on the route,
  within the look-ahead radius, one alert per region
- AlertPreference CRUD

Every alert is gated by the user's preferences (enabled flag, crime-type
filter, active days and hours). No preferences means "alert".
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.config import settings
from walksafe.db import queries
from walksafe.db.models import AlertPreference
from walksafe.enums import AlertSeverity, AlertType
from walksafe.geo import Coordinates, RegionLookup
from walksafe.timeutils import Clock, parse_hhmm, utcnow

logger = structlog.get_logger(__name__)


# ── Schemas ──────────────────────────────────────────────────────────────


class Alert(BaseModel):
    type: AlertType
    severity: AlertSeverity
    message: str
    region_name: str
    region_id: int
    distance_m: Optional[float] = None
    risk_index: float


class AlertCheckResult(BaseModel):
    alerts: list[Alert] = Field(default_factory=list)
    alert_distance: float

    @property
    def region_ids(self) -> set[int]:
        return {a.region_id for a in self.alerts}


class AlertPreferenceUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    alerts_enabled: Optional[bool] = None
    enabled_crime_types: Optional[list[int]] = None
    active_hours_start: Optional[str] = None
    active_hours_end: Optional[str] = None
    active_days: Optional[list[int]] = None

    @field_validator("active_hours_start", "active_hours_end")
    @classmethod
    def _valid_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            hour, minute = parse_hhmm(v)
            return f"{hour:02d}:{minute:02d}"
        return v

    @field_validator("active_days")
    @classmethod
    def _valid_days(cls, v: Optional[list[int]]) -> Optional[list[int]]:
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("days must be 0 (Sunday) .. 6 (Saturday)")
        return v


# ── Service ──────────────────────────────────────────────────────────────


def calculate_alert_distance(speed_kmh: float) -> float:
    """
    Look-ahead radius in meters. Non-decreasing in speed, never below the
    minimum (also at speed 0).
    """
    minimum = settings.alert_min_distance_m
    default = settings.alert_default_distance_m
    threshold = settings.alert_speed_threshold_kmh
    if speed_kmh is None or speed_kmh <= 0:
        return minimum
    scaled = default * speed_kmh / threshold
    if speed_kmh <= threshold:
        return max(minimum, scaled)
    return max(default, scaled)


class AlertService:
    def __init__(
        self,
        region_lookup: RegionLookup,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
    ):
        self.region_lookup = region_lookup
        self.session_factory = session_factory
        self.clock = clock

    calculate_alert_distance = staticmethod(calculate_alert_distance)

    @staticmethod
    def _gate(preferences: Optional[AlertPreference], region: Any, now: datetime) -> bool:
        if preferences is None:
            return True
        return preferences.should_alert(getattr(region, "dominant_crime_type_id", None), now)

    @staticmethod
    def _is_high_risk(region: Any) -> bool:
        return float(region.risk_index or 0.0) >= settings.risk_high_threshold

    async def check_alert_conditions(
        self,
        position: Coordinates,
        speed_kmh: float,
        preferences: Optional[AlertPreference] = None,
        now: Optional[datetime] = None,
    ) -> AlertCheckResult:
        """Alert for the region containing position, if high-risk and allowed."""
        now = now or self.clock()
        result = AlertCheckResult(alert_distance=calculate_alert_distance(speed_kmh))

        region = await self.region_lookup.find_region(position)
        if region is None or not self._is_high_risk(region):
            return result
        if not self._gate(preferences, region, now):
            logger.debug("alert_suppressed_by_preferences", region_id=region.id)
            return result

        result.alerts.append(
            Alert(
                type=AlertType.HIGH_RISK_REGION,
                severity=AlertSeverity.HIGH,
                message=f"You are entering a high-risk area: {region.name}",
                region_name=region.name,
                region_id=region.id,
                risk_index=float(region.risk_index),
            )
        )
        logger.info("high_risk_alert_emitted", region_id=region.id, risk_index=region.risk_index)
        return result

    async def check_approaching_alerts(
        self,
        position: Coordinates,
        speed_kmh: float,
        waypoints: Sequence[Coordinates],
        preferences: Optional[AlertPreference] = None,
        now: Optional[datetime] = None,
        exclude_region_ids: Optional[set[int]] = None,
    ) -> AlertCheckResult:
        """
        One "approaching" alert per high-risk region reached by a waypoint
        within the alert distance. The region at the current position (and
        any in exclude_region_ids) is never repeated here.
        """
        now = now or self.clock()
        alert_distance = calculate_alert_distance(speed_kmh)
        result = AlertCheckResult(alert_distance=alert_distance)

        seen: set[int] = set(exclude_region_ids or ())
        current = await self.region_lookup.find_region(position)
        if current is not None:
            seen.add(current.id)

        for waypoint in waypoints:
            distance = position.distance_to(waypoint)
            if distance > alert_distance:
                continue
            region = await self.region_lookup.find_region(waypoint)
            if region is None or region.id in seen or not self._is_high_risk(region):
                continue
            seen.add(region.id)
            if not self._gate(preferences, region, now):
                continue
            result.alerts.append(
                Alert(
                    type=AlertType.APPROACHING_HIGH_RISK,
                    severity=AlertSeverity.WARNING,
                    message=f"High-risk area ahead in {int(round(distance))} m: {region.name}",
                    region_name=region.name,
                    region_id=region.id,
                    distance_m=round(distance, 1),
                    risk_index=float(region.risk_index),
                )
            )
        return result

    async def check_all_alerts(
        self,
        position: Coordinates,
        speed_kmh: float,
        waypoints: Sequence[Coordinates] = (),
        preferences: Optional[AlertPreference] = None,
        now: Optional[datetime] = None,
    ) -> AlertCheckResult:
        """Current-region alert followed by approaching alerts, without duplicates."""
        current = await self.check_alert_conditions(position, speed_kmh, preferences, now)
        ahead = await self.check_approaching_alerts(
            position, speed_kmh, waypoints, preferences, now, exclude_region_ids=current.region_ids
        )
        return AlertCheckResult(
            alerts=[*current.alerts, *ahead.alerts],
            alert_distance=current.alert_distance,
        )

    # ── Preferences ───────────────────────────────────────────────────

    def _require_db(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            raise RuntimeError("AlertService was built without a session factory")
        return self.session_factory

    async def get_user_preferences(self, user_id: uuid.UUID) -> AlertPreference:
        """Stored preferences, created with defaults on first access."""
        async with self._require_db()() as session:
            pref = await queries.get_alert_preference(session, user_id)
            if pref is not None:
                return pref
        return await self.create_default_preferences(user_id)

    async def create_default_preferences(self, user_id: uuid.UUID) -> AlertPreference:
        async with self._require_db()() as session:
            existing = await queries.get_alert_preference(session, user_id)
            if existing is not None:
                return existing
            pref = AlertPreference(user_id=user_id, created_at=self.clock())
            session.add(pref)
            await session.commit()
            logger.info("alert_preferences_created", user_id=str(user_id))
            return pref

    async def update_preferences(
        self, user_id: uuid.UUID, update: AlertPreferenceUpdate | dict[str, Any]
    ) -> AlertPreference:
        if isinstance(update, dict):
            update = AlertPreferenceUpdate.model_validate(update)
        changes = update.model_dump(include=update.model_fields_set)

        async with self._require_db()() as session:
            pref = await queries.get_alert_preference(session, user_id)
            if pref is None:
                pref = AlertPreference(user_id=user_id, created_at=self.clock())
                session.add(pref)

            if "alerts_enabled" in changes:
                pref.alerts_enabled = bool(changes["alerts_enabled"])
            if "enabled_crime_types" in changes:
                pref.enabled_crime_types = sorted(set(changes["enabled_crime_types"] or []))
            if "active_hours_start" in changes or "active_hours_end" in changes:
                pref.set_active_hours(
                    changes.get("active_hours_start", pref.active_hours_start),
                    changes.get("active_hours_end", pref.active_hours_end),
                )
            if "active_days" in changes:
                pref.set_active_days(changes["active_days"] or [])
            pref.updated_at = self.clock()

            await session.commit()
            logger.info("alert_preferences_updated", user_id=str(user_id), fields=sorted(changes))
            return pref
