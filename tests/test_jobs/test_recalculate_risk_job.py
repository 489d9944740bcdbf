"""RecalculateRiskIndex job tests."""

import pytest

from conftest import NOW, FrozenClock
from walksafe.exceptions import RegionNotFoundError
from walksafe.jobs.recalculate_risk import RecalculateRiskIndex
from walksafe.services.risk_service import RiskService


@pytest.mark.asyncio
class TestRecalculateRiskIndex:
    async def test_single_region_mode(self, session_factory, make_region, make_crime_type, make_occurrence):
        region = await make_region()
        crime = await make_crime_type()
        for _ in range(10):
            await make_occurrence(region, crime.id, severity="critical", confidence_score=5)
        service = RiskService(session_factory, clock=FrozenClock(NOW))

        job = RecalculateRiskIndex(service, region_id=region.id)
        result = await job.run()

        assert job.mode == "single"
        assert result["mode"] == "single"
        assert result["region_id"] == region.id
        assert result["value"] == 85.0
        assert result["calculated_at"] == NOW.isoformat()

    async def test_all_regions_mode(self, session_factory, make_region):
        await make_region("A")
        await make_region("B", south=-23.50, west=-46.65, north=-23.48, east=-46.63)
        service = RiskService(session_factory, clock=FrozenClock(NOW))

        job = RecalculateRiskIndex(service, batch_size=1)
        result = await job.run()

        assert job.mode == "all"
        assert result == {"mode": "all", "processed": 2, "failed": 0, "failed_region_ids": []}

    async def test_single_region_missing_raises(self, session_factory):
        job = RecalculateRiskIndex(RiskService(session_factory), region_id=404)
        with pytest.raises(RegionNotFoundError):
            await job.run()
