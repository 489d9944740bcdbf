"""
Risk Service Tests.

Tests: factor formulas, bounds, idempotence, occurrence filters (window,
status, expiry), persistence of the snapshot, batch recalculation,
per-region serialization of concurrent recalculations.
"""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import NOW, FrozenClock
from walksafe.db.models import Region, RiskIndex
from walksafe.enums import OccurrenceSource, OccurrenceStatus
from walksafe.exceptions import RegionNotFoundError
from walksafe.geo import Coordinates
from walksafe.services.region_lookup import DatabaseRegionLookup
from walksafe.services.risk_service import (
    RiskService,
    calculate_factors,
    dominant_crime_type,
    is_high_risk,
    requires_warning,
    score_occurrences,
)


def _occ(days_ago=0, severity="medium", confidence=2, crime_type_id=1):
    return SimpleNamespace(
        timestamp=NOW - timedelta(days=days_ago),
        severity=severity,
        confidence_score=confidence,
        crime_type_id=crime_type_id,
    )


# ── Pure scoring ─────────────────────────────────────────────────────────


class TestScoring:
    def test_no_occurrences_scores_zero(self):
        result = score_occurrences(1, [], NOW)
        assert result.value == 0.0
        assert result.occurrence_count == 0
        assert result.dominant_crime_type_id is None
        assert set(result.factors) == {"frequency", "recency", "severity", "confidence"}

    def test_ten_recent_critical_reports(self):
        occurrences = [_occ(severity="critical", confidence=5) for _ in range(10)]
        result = score_occurrences(1, occurrences, NOW)

        assert result.factors == {
            "frequency": 50.0,
            "recency": 100.0,
            "severity": 100.0,
            "confidence": 100.0,
        }
        assert result.value == 85.0
        assert is_high_risk(result.value)
        assert requires_warning(result.value)

    def test_frequency_saturates(self):
        factors = calculate_factors([_occ() for _ in range(50)], NOW)
        assert factors["frequency"] == 100.0

    def test_recency_uses_whole_days(self):
        # 23 hours old still counts as today
        occ = SimpleNamespace(
            timestamp=NOW - timedelta(hours=23), severity="low", confidence_score=1, crime_type_id=1
        )
        assert calculate_factors([occ], NOW)["recency"] == 100.0
        week_old = calculate_factors([_occ(days_ago=7)], NOW)["recency"]
        assert week_old == pytest.approx(36.79, abs=0.01)

    def test_unknown_severity_counts_as_medium(self):
        factors = calculate_factors([_occ(severity="catastrophic")], NOW)
        assert factors["severity"] == 50.0

    def test_dominant_crime_type_tie_breaks_low(self):
        occurrences = [_occ(crime_type_id=3), _occ(crime_type_id=2), _occ(crime_type_id=3), _occ(crime_type_id=2)]
        assert dominant_crime_type(occurrences) == 2
        assert dominant_crime_type([_occ(crime_type_id=4), *occurrences, _occ(crime_type_id=3)]) == 3

    def test_thresholds(self):
        assert not is_high_risk(69.99)
        assert is_high_risk(70.0)
        assert not requires_warning(49.99)
        assert requires_warning(50.0)

    @given(
        st.lists(
            st.tuples(
                st.integers(min_value=0, max_value=29),
                st.sampled_from(["low", "medium", "high", "critical"]),
                st.integers(min_value=1, max_value=5),
            ),
            max_size=40,
        )
    )
    @settings(max_examples=100)
    def test_value_bounded_and_deterministic(self, rows):
        occurrences = [_occ(days, sev, conf) for days, sev, conf in rows]
        first = score_occurrences(1, occurrences, NOW)
        second = score_occurrences(1, list(reversed(occurrences)), NOW)
        assert 0.0 <= first.value <= 100.0
        assert first.value == second.value


# ── Service (database) ───────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRiskService:
    async def test_recalculate_persists_region_and_snapshot(
        self, session_factory, make_region, make_crime_type, make_occurrence
    ):
        region = await make_region()
        robbery = await make_crime_type("Robbery")
        for _ in range(10):
            await make_occurrence(region, robbery.id, severity="critical", confidence_score=5)

        service = RiskService(session_factory, clock=FrozenClock(NOW))
        result = await service.recalculate_region_risk(region.id)

        assert result.value == 85.0
        assert result.dominant_crime_type_id == robbery.id
        async with session_factory() as session:
            stored = await session.get(Region, region.id)
            assert stored.risk_index == 85.0
            assert stored.occurrence_count == 10
            assert stored.last_recalculated_at == NOW

        snapshot = await service.get_region_risk(region.id)
        assert snapshot.value == 85.0
        assert snapshot.factors["frequency"] == 50.0

    async def test_recalculation_is_idempotent(
        self, session_factory, make_region, make_crime_type, make_occurrence
    ):
        region = await make_region()
        crime = await make_crime_type()
        for days in (0, 2, 5):
            await make_occurrence(region, crime.id, timestamp=NOW - timedelta(days=days), severity="high")

        service = RiskService(session_factory, clock=FrozenClock(NOW))
        first = await service.recalculate_region_risk(region.id)
        second = await service.recalculate_region_risk(region.id)

        assert first.value == second.value
        async with session_factory() as session:
            from sqlalchemy import func, select

            count = await session.scalar(select(func.count()).select_from(RiskIndex))
        assert count == 1

    async def test_filters_window_status_and_expiry(
        self, session_factory, make_region, make_crime_type, make_occurrence
    ):
        region = await make_region()
        crime = await make_crime_type()
        await make_occurrence(region, crime.id)  # counted
        await make_occurrence(region, crime.id, timestamp=NOW - timedelta(days=31))
        await make_occurrence(region, crime.id, status=OccurrenceStatus.REJECTED.value)
        await make_occurrence(region, crime.id, expires_at=NOW - timedelta(hours=1))
        await make_occurrence(
            region,
            crime.id,
            source=OccurrenceSource.OFFICIAL.value,
            confidence_score=5,
            expires_at=NOW - timedelta(hours=1),
        )  # official: counted despite expires_at

        service = RiskService(session_factory, clock=FrozenClock(NOW))
        result = await service.recalculate_region_risk(region.id)
        assert result.occurrence_count == 2

    async def test_only_own_region_counted(
        self, session_factory, make_region, make_crime_type, make_occurrence
    ):
        region = await make_region("Centro")
        other = await make_region("Norte", south=-23.50, west=-46.65, north=-23.48, east=-46.63)
        crime = await make_crime_type()
        await make_occurrence(other, crime.id)

        service = RiskService(session_factory, clock=FrozenClock(NOW))
        result = await service.recalculate_region_risk(region.id)
        assert result.value == 0.0

    async def test_unknown_region(self, session_factory):
        service = RiskService(session_factory, clock=FrozenClock(NOW))
        with pytest.raises(RegionNotFoundError):
            await service.recalculate_region_risk(999)

    async def test_recalculate_all_regions_in_batches(
        self, session_factory, make_region, make_crime_type, make_occurrence
    ):
        crime = await make_crime_type()
        regions = []
        for i in range(5):
            south = -23.60 + i * 0.02
            region = await make_region(f"R{i}", south=south, west=-46.65, north=south + 0.01, east=-46.64)
            await make_occurrence(region, crime.id, severity="critical", confidence_score=5)
            regions.append(region)

        service = RiskService(session_factory, clock=FrozenClock(NOW))
        summary = await service.recalculate_all_regions(batch_size=2)

        assert summary == {"processed": 5, "failed": 0, "failed_region_ids": []}
        async with session_factory() as session:
            for region in regions:
                assert (await session.get(Region, region.id)).risk_index > 0

    async def test_failing_region_does_not_stop_batch(
        self, session_factory, make_region, monkeypatch
    ):
        first = await make_region("A")
        second = await make_region("B", south=-23.50, west=-46.65, north=-23.48, east=-46.63)
        service = RiskService(session_factory, clock=FrozenClock(NOW))

        original = service._recalculate

        async def flaky(session, region_id):
            if region_id == first.id:
                raise RuntimeError("boom")
            return await original(session, region_id)

        monkeypatch.setattr(service, "_recalculate", flaky)
        summary = await service.recalculate_all_regions(batch_size=10)

        assert summary["processed"] == 1
        assert summary["failed"] == 1
        assert summary["failed_region_ids"] == [first.id]
        async with session_factory() as session:
            assert (await session.get(Region, second.id)).last_recalculated_at == NOW

    async def test_risk_for_coordinates(self, session_factory, make_region):
        await make_region(risk_index=72.5)
        service = RiskService(session_factory, region_lookup=DatabaseRegionLookup(session_factory))

        assert await service.get_risk_for_coordinates(Coordinates(-23.55, -46.64)) == 72.5
        assert await service.get_risk_for_coordinates(Coordinates(10.0, 10.0)) is None

    async def test_get_region_risk_before_first_run(self, session_factory, make_region):
        region = await make_region()
        service = RiskService(session_factory)
        assert await service.get_region_risk(region.id) is None


@pytest.mark.asyncio
class TestRecalculationLocking:
    @staticmethod
    def _tracking_recalculate(service, monkeypatch):
        state = {"active": 0, "peak": 0, "order": []}

        async def slow(session, region_id):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            state["order"].append(("start", region_id))
            await asyncio.sleep(0.01)
            state["order"].append(("end", region_id))
            state["active"] -= 1
            return SimpleNamespace(value=0.0, occurrence_count=0)

        monkeypatch.setattr(service, "_recalculate", slow)
        return state

    async def test_same_region_recalculations_are_serialized(self, session_factory, monkeypatch):
        service = RiskService(session_factory, clock=FrozenClock(NOW))
        state = self._tracking_recalculate(service, monkeypatch)

        await asyncio.gather(
            service.recalculate_region_risk(7),
            service.recalculate_region_risk(7),
            service.recalculate_region_risk(7),
        )

        assert state["peak"] == 1
        assert state["order"] == [("start", 7), ("end", 7)] * 3

    async def test_different_regions_run_concurrently(self, session_factory, monkeypatch):
        service = RiskService(session_factory, clock=FrozenClock(NOW))
        state = self._tracking_recalculate(service, monkeypatch)

        await asyncio.gather(service.recalculate_region_risk(1), service.recalculate_region_risk(2))

        assert state["peak"] == 2
