"""
Route Service Tests.

Tests: per-region risk aggregation along a route, warning message,
safe-route selection among alternatives.
"""

import pytest

from walksafe.db.models import Region
from walksafe.exceptions import ProviderError, ProviderErrorCode
from walksafe.geo import Coordinates, InMemoryRegionLookup, rectangle
from walksafe.providers.schemas import Route
from walksafe.services.route_service import RouteService

SAFE = Region.from_boundary("Jardins", rectangle(-23.57, -46.67, -23.56, -46.66), id=1, risk_index=15.0)
MEDIUM = Region.from_boundary("Bela Vista", rectangle(-23.56, -46.67, -23.55, -46.66), id=2, risk_index=55.0)
DANGER = Region.from_boundary("Sé", rectangle(-23.56, -46.66, -23.55, -46.65), id=3, risk_index=88.0)

ORIGIN = Coordinates(-23.565, -46.665)       # Jardins
DESTINATION = Coordinates(-23.5655, -46.6645)  # Jardins


def _route(distance, *waypoints, provider="google"):
    return Route(ORIGIN, DESTINATION, float(distance), int(distance), provider, waypoints=waypoints)


class _FakeAdapter:
    def __init__(self, route=None, alternatives=()):
        self.route = route
        self.alternatives = list(alternatives)
        self.requested_count = None

    def get_provider_name(self):
        return "fake"

    async def calculate_route(self, origin, destination, options=None):
        return self.route

    async def calculate_alternative_routes(self, origin, destination, count=3):
        self.requested_count = count
        return self.alternatives[:count]


def _make_service(adapter=None):
    return RouteService(adapter or _FakeAdapter(), InMemoryRegionLookup([SAFE, MEDIUM, DANGER]))


@pytest.mark.asyncio
class TestAnalyzeRouteRisk:
    async def test_route_through_safe_region_only(self):
        analysis = await _make_service().analyze_route_risk(_route(500))
        assert analysis.max_risk_index == 15.0
        assert analysis.average_risk_index == 15.0
        assert analysis.requires_warning is False
        assert analysis.warning_message is None
        assert [r.region_id for r in analysis.regions] == [1]

    async def test_each_region_counted_once(self):
        route = _route(900, Coordinates(-23.555, -46.655), Coordinates(-23.556, -46.654))
        analysis = await _make_service().analyze_route_risk(route)
        assert [r.region_id for r in analysis.regions] == [1, 3]
        assert analysis.average_risk_index == 51.5
        assert analysis.max_risk_index == 88.0

    async def test_warning_names_riskiest_region(self):
        route = _route(900, Coordinates(-23.555, -46.665), Coordinates(-23.555, -46.655))
        analysis = await _make_service().analyze_route_risk(route)
        assert analysis.requires_warning is True
        assert analysis.warning_message == "This route passes through Sé (risk index 88)"
        assert [r.region_name for r in analysis.high_risk_regions] == ["Sé"]

    async def test_points_outside_regions(self):
        route = Route(Coordinates(0, 0), Coordinates(0.01, 0.01), 1500.0, 1200, "google")
        analysis = await _make_service().analyze_route_risk(route)
        assert analysis.max_risk_index == 0.0
        assert analysis.regions == []


@pytest.mark.asyncio
class TestRouteSelection:
    async def test_route_with_risk(self):
        route = _route(900, Coordinates(-23.555, -46.655))
        result = await _make_service(_FakeAdapter(route=route)).calculate_route_with_risk(ORIGIN, DESTINATION)

        assert result.route_id == route.id
        assert result.distance_m == 900.0
        assert result.max_risk_index == 88.0
        assert result.requires_warning is True

    async def test_safe_route_prefers_lower_risk(self):
        risky = _route(1000, Coordinates(-23.555, -46.655), provider="a")
        moderate = _route(1100, Coordinates(-23.555, -46.665), provider="b")
        safest = _route(1150, provider="c")
        adapter = _FakeAdapter(alternatives=[risky, moderate, safest])

        result = await _make_service(adapter).calculate_safe_route(ORIGIN, DESTINATION)

        assert result.provider == "c"
        assert result.max_risk_index == 15.0
        assert adapter.requested_count == 3

    async def test_safe_route_ignores_long_detours(self):
        risky = _route(1000, Coordinates(-23.555, -46.655), provider="a")
        detour = _route(1300, provider="b")  # > 1.2x shortest
        adapter = _FakeAdapter(alternatives=[risky, detour])

        result = await _make_service(adapter).calculate_safe_route(ORIGIN, DESTINATION)

        assert result.provider == "a"

    async def test_equal_risk_breaks_on_distance(self):
        adapter = _FakeAdapter(alternatives=[_route(1100, provider="long"), _route(1000, provider="short")])
        result = await _make_service(adapter).calculate_safe_route(ORIGIN, DESTINATION)
        assert result.provider == "short"

    async def test_no_alternatives(self):
        with pytest.raises(ProviderError) as exc_info:
            await _make_service(_FakeAdapter()).calculate_safe_route(ORIGIN, DESTINATION)
        assert exc_info.value.code == ProviderErrorCode.NO_ROUTE
