"""
Bulk import of official crime records.

Per record:
1. validate (pydantic): location, timestamp, a crime identifier
2. map crime type: source mapping -> direct id -> default "Other"
3. deduplicate: same official source_id, or same crime type within
   ETL_DEDUP_DISTANCE_M and +/- ETL_DEDUP_WINDOW_HOURS
4. resolve region, store as official (confidence 5, no expiry)

The whole file is imported in one transaction; risk for the touched
regions is recalculated afterwards.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.config import settings
from walksafe.db import queries
from walksafe.db.models import Occurrence
from walksafe.enums import OccurrenceSeverity, OccurrenceSource, OccurrenceStatus
from walksafe.geo import Coordinates, RegionLookup
from walksafe.services.region_lookup import find_region_in_session
from walksafe.services.risk_service import RiskService
from walksafe.timeutils import Clock, utcnow

logger = structlog.get_logger(__name__)

# Never copied into occurrence metadata
PERSONAL_FIELDS = frozenset({
    "name", "victim", "victim_name", "suspect", "suspect_name", "cpf", "rg",
    "document", "phone", "email", "birth_date",
})


class OfficialRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    source_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_id", "id", "external_id")
    )
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: datetime
    crime_code: Optional[str] = None
    crime_type: Optional[str] = None
    crime_type_id: Optional[int] = None
    severity: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        location = data.get("location")
        if isinstance(location, dict):
            data.setdefault("latitude", location.get("lat", location.get("latitude")))
            data.setdefault("longitude", location.get("lng", location.get("longitude", location.get("lon"))))
        if data.get("timestamp") in (None, ""):
            for key in ("date", "occurred_at"):
                if data.get(key):
                    data["timestamp"] = data[key]
                    break
        for key in ("source_id", "id", "external_id", "crime_code"):
            if isinstance(data.get(key), int):
                data[key] = str(data[key])
        if data.get("crime_type_id") in ("", None):
            data.pop("crime_type_id", None)
        return data

    @model_validator(mode="after")
    def _check(self) -> "OfficialRecord":
        if not (self.crime_code or self.crime_type or self.crime_type_id is not None):
            raise ValueError("record needs crime_code, crime_type or crime_type_id")
        if self.timestamp.tzinfo is not None:
            self.timestamp = self.timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        return self

    @property
    def location(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


def sanitize(raw: dict[str, Any]) -> dict[str, Any]:
    """Original record minus personal fields, JSON-safe."""
    clean: dict[str, Any] = {}
    for key, value in raw.items():
        if str(key).lower() in PERSONAL_FIELDS:
            continue
        if isinstance(value, (str, int, float, bool)) or value is None:
            clean[str(key)] = value
        elif isinstance(value, dict):
            clean[str(key)] = sanitize(value)
        else:
            clean[str(key)] = str(value)
    return clean


class EtlImport:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: str,
        region_lookup: Optional[RegionLookup] = None,
        risk_service: Optional[RiskService] = None,
        clock: Clock = utcnow,
        dedup_distance_m: Optional[float] = None,
        dedup_window: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.source = source
        self.region_lookup = region_lookup
        self.risk_service = risk_service
        self.clock = clock
        self.dedup_distance_m = dedup_distance_m or settings.etl_dedup_distance_m
        self.dedup_window = dedup_window or timedelta(hours=settings.etl_dedup_window_hours)

    async def run(self, records: Iterable[dict[str, Any]]) -> dict[str, Any]:
        stats = {"total": 0, "imported": 0, "duplicates": 0, "mapping_failed": 0, "errors": 0}
        affected: set[int] = set()
        logger.info("etl_import_started", source=self.source)

        async with self.session_factory() as session:
            try:
                for index, raw in enumerate(records):
                    stats["total"] += 1
                    outcome, region_id = await self._import_one(session, index, raw)
                    stats[outcome] += 1
                    if region_id is not None:
                        affected.add(region_id)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error("etl_import_failed", source=self.source, error=str(e))
                raise

        logger.info("etl_import_completed", source=self.source, **stats)
        stats["affected_region_ids"] = sorted(affected)
        await self._recalculate(stats["affected_region_ids"])
        return stats

    async def _import_one(
        self, session: AsyncSession, index: int, raw: dict[str, Any]
    ) -> tuple[str, Optional[int]]:
        try:
            record = OfficialRecord.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning("etl_record_invalid", source=self.source, index=index, error=str(e))
            return "errors", None

        crime_type_id = await self._map_crime_type(session, record)
        if crime_type_id is None:
            logger.warning("etl_mapping_failed", source=self.source, index=index,
                           crime_code=record.crime_code or record.crime_type)
            return "mapping_failed", None

        if await self._is_duplicate(session, record, crime_type_id):
            return "duplicates", None

        location = record.location
        if self.region_lookup is not None:
            region = await self.region_lookup.find_region(location)
        else:
            region = await find_region_in_session(session, location)
        region_id = region.id if region is not None else None

        session.add(
            Occurrence(
                latitude=location.latitude,
                longitude=location.longitude,
                crime_type_id=crime_type_id,
                severity=OccurrenceSeverity.parse(
                    record.severity or OccurrenceSeverity.MEDIUM, default=OccurrenceSeverity.MEDIUM
                ).value,
                confidence_score=OccurrenceSource.OFFICIAL.initial_confidence,
                source=OccurrenceSource.OFFICIAL.value,
                source_id=record.source_id,
                region_id=region_id,
                timestamp=record.timestamp,
                status=OccurrenceStatus.ACTIVE.value,
                expires_at=None,
                metadata_={
                    "etl_source": self.source,
                    "imported_at": self.clock().isoformat(),
                    "original": sanitize(raw),
                },
                created_at=self.clock(),
            )
        )
        await session.flush()
        return "imported", region_id

    async def _map_crime_type(self, session: AsyncSession, record: OfficialRecord) -> Optional[int]:
        code = record.crime_code or record.crime_type
        if code:
            mapping = await queries.find_external_mapping(session, self.source, code)
            if mapping is not None:
                return mapping.crime_type_id
        if record.crime_type_id is not None:
            crime_type = await queries.get_crime_type(session, record.crime_type_id)
            if crime_type is not None:
                return crime_type.id
        default = await queries.find_default_crime_type(session)
        return default.id if default is not None else None

    async def _is_duplicate(
        self, session: AsyncSession, record: OfficialRecord, crime_type_id: int
    ) -> bool:
        if record.source_id and await queries.official_source_id_exists(session, record.source_id):
            return True
        nearby = await queries.find_nearby_occurrence(
            session,
            crime_type_id,
            record.location,
            record.timestamp,
            self.dedup_distance_m,
            self.dedup_window,
        )
        return nearby is not None

    async def _recalculate(self, region_ids: list[int]) -> None:
        if self.risk_service is None:
            return
        for region_id in region_ids:
            try:
                await self.risk_service.recalculate_region_risk(region_id)
            except Exception as e:
                logger.error("etl_risk_recalculation_failed", region_id=region_id, error=str(e))
