"""
ETL Import Tests.

Tests: record validation, crime type mapping chain, de-duplication (source
id and proximity), privacy scrubbing, region assignment, risk refresh.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from conftest import NOW, FrozenClock
from walksafe.db.models import ExternalMapping, Occurrence, Region
from walksafe.enums import OccurrenceSource, OccurrenceStatus
from walksafe.jobs.etl_import import EtlImport, OfficialRecord, sanitize
from walksafe.services.risk_service import RiskService


def _record(**overrides):
    record = {
        "source_id": "SSP-1",
        "latitude": -23.55,
        "longitude": -46.64,
        "timestamp": "2024-03-12T10:00:00",
        "crime_code": "157",
        "severity": "high",
    }
    record.update(overrides)
    return record


async def _add_mapping(session_factory, source, code, crime_type_id):
    async with session_factory() as session:
        session.add(ExternalMapping(source=source, external_code=code, crime_type_id=crime_type_id))
        await session.commit()


async def _occurrences(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(Occurrence).order_by(Occurrence.timestamp))).scalars().all()


class TestOfficialRecord:
    def test_aliases_and_nested_location(self):
        record = OfficialRecord.model_validate(
            {"id": 42, "location": {"lat": -23.5, "lng": -46.6}, "date": "2024-03-01T08:00:00", "crime_type": "roubo"}
        )
        assert record.source_id == "42"
        assert record.latitude == -23.5
        assert record.timestamp == datetime(2024, 3, 1, 8, 0)

    def test_aware_timestamp_normalized_to_utc(self):
        record = OfficialRecord.model_validate(_record(timestamp="2024-03-12T22:30:00-03:00"))
        assert record.timestamp == datetime(2024, 3, 13, 1, 30)
        assert record.timestamp.tzinfo is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"latitude": 200},
            {"longitude": -181},
            {"timestamp": "not a date"},
            {"crime_code": None},
        ],
    )
    def test_invalid_records(self, overrides):
        with pytest.raises(ValueError):
            OfficialRecord.model_validate(_record(**overrides))

    def test_sanitize_drops_personal_fields(self):
        clean = sanitize({"id": 1, "Victim_Name": "Fulano", "cpf": "123", "extra": {"phone": "9", "bairro": "Sé"}})
        assert clean == {"id": 1, "extra": {"bairro": "Sé"}}


@pytest.mark.asyncio
class TestEtlImport:
    async def test_imports_official_occurrence(
        self, session_factory, make_region, make_crime_type
    ):
        region = await make_region()
        robbery = await make_crime_type("Robbery")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)
        job = EtlImport(session_factory, source="ssp", clock=FrozenClock(NOW))

        stats = await job.run([_record(victim_name="Fulano", cpf="123.456.789-00")])

        assert stats["imported"] == 1
        assert stats["affected_region_ids"] == [region.id]
        [occ] = await _occurrences(session_factory)
        assert occ.crime_type_id == robbery.id
        assert occ.source == OccurrenceSource.OFFICIAL.value
        assert occ.confidence_score == 5
        assert occ.expires_at is None
        assert occ.status == OccurrenceStatus.ACTIVE.value
        assert occ.severity == "high"
        assert occ.region_id == region.id
        assert occ.source_id == "SSP-1"
        original = occ.metadata_["original"]
        assert "victim_name" not in original
        assert "cpf" not in original
        assert occ.metadata_["etl_source"] == "ssp"

    async def test_mapping_chain(self, session_factory, make_region, make_crime_type):
        await make_region()
        robbery = await make_crime_type("Robbery")
        theft = await make_crime_type("Theft")
        other = await make_crime_type("Other")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)
        job = EtlImport(session_factory, source="ssp", clock=FrozenClock(NOW))

        stats = await job.run(
            [
                _record(source_id="a", crime_code="157", timestamp="2024-03-01T10:00:00"),
                _record(source_id="b", crime_code=None, crime_type_id=theft.id, timestamp="2024-03-02T10:00:00"),
                _record(source_id="c", crime_code="999", timestamp="2024-03-03T10:00:00"),
            ]
        )

        assert stats["imported"] == 3
        assert [o.crime_type_id for o in await _occurrences(session_factory)] == [robbery.id, theft.id, other.id]

    async def test_mapping_failure_without_default(self, session_factory, make_crime_type):
        await make_crime_type("Robbery")
        stats = await EtlImport(session_factory, source="ssp").run([_record(crime_code="999")])
        assert stats["mapping_failed"] == 1
        assert stats["imported"] == 0

    async def test_deduplicates(self, session_factory, make_region, make_crime_type):
        await make_region()
        robbery = await make_crime_type("Robbery")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)
        job = EtlImport(session_factory, source="ssp", clock=FrozenClock(NOW))

        stats = await job.run(
            [
                _record(source_id="x1"),
                _record(source_id="x1", latitude=-23.545),                       # same source id
                _record(source_id="x2", latitude=-23.5504, timestamp="2024-03-12T10:30:00"),  # ~45 m, 30 min
                _record(source_id="x3", latitude=-23.545, timestamp="2024-03-12T10:30:00"),   # ~556 m away
                _record(source_id="x4", timestamp="2024-03-12T13:00:00"),         # 3 h later
            ]
        )

        assert stats["total"] == 5
        assert stats["duplicates"] == 2
        assert stats["imported"] == 3

    async def test_invalid_records_counted_not_fatal(self, session_factory, make_region, make_crime_type):
        await make_region()
        robbery = await make_crime_type("Robbery")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)

        stats = await EtlImport(session_factory, source="ssp").run(
            [_record(latitude=999), {"garbage": True}, _record(source_id="ok")]
        )

        assert stats["errors"] == 2
        assert stats["imported"] == 1

    async def test_outside_regions_still_imported(self, session_factory, make_crime_type):
        robbery = await make_crime_type("Robbery")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)

        stats = await EtlImport(session_factory, source="ssp").run([_record(latitude=10.0, longitude=10.0)])

        assert stats["imported"] == 1
        assert stats["affected_region_ids"] == []
        [occ] = await _occurrences(session_factory)
        assert occ.region_id is None

    async def test_refreshes_risk_of_touched_regions(self, session_factory, make_region, make_crime_type):
        region = await make_region()
        robbery = await make_crime_type("Robbery")
        await _add_mapping(session_factory, "ssp", "157", robbery.id)
        clock = FrozenClock(NOW)
        job = EtlImport(
            session_factory, source="ssp", risk_service=RiskService(session_factory, clock=clock), clock=clock
        )

        await job.run([_record(severity="critical")])

        async with session_factory() as session:
            stored = await session.get(Region, region.id)
        assert stored.occurrence_count == 1
        assert stored.risk_index > 0
