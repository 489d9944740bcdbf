"""
Route Service: routes annotated with region risk.

A route's risk is read from the regions its points (origin, waypoints,
destination) fall in, each region counted once.
"""

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from walksafe.config import settings
from walksafe.exceptions import ProviderError
from walksafe.geo import Coordinates, RegionLookup
from walksafe.providers.schemas import Route, RouteOptions

logger = structlog.get_logger(__name__)

SAFE_ROUTE_DISTANCE_FACTOR = 1.2


class RegionRisk(BaseModel):
    region_id: int
    region_name: str
    risk_index: float


class RouteRiskAnalysis(BaseModel):
    max_risk_index: float = 0.0
    average_risk_index: float = 0.0
    regions: list[RegionRisk] = Field(default_factory=list)
    high_risk_regions: list[RegionRisk] = Field(default_factory=list)
    requires_warning: bool = False
    warning_message: Optional[str] = None


class RouteResult(BaseModel):
    route_id: str
    provider: str
    distance_m: float
    duration_s: int
    polyline: str
    instructions: list[str] = Field(default_factory=list)
    max_risk_index: float
    average_risk_index: float
    requires_warning: bool
    warning_message: Optional[str] = None
    high_risk_regions: list[RegionRisk] = Field(default_factory=list)

    @classmethod
    def build(cls, route: Route, analysis: RouteRiskAnalysis) -> "RouteResult":
        return cls(
            route_id=route.id,
            provider=route.provider,
            distance_m=route.distance,
            duration_s=route.duration,
            polyline=route.polyline,
            instructions=list(route.instructions),
            max_risk_index=analysis.max_risk_index,
            average_risk_index=analysis.average_risk_index,
            requires_warning=analysis.requires_warning,
            warning_message=analysis.warning_message,
            high_risk_regions=analysis.high_risk_regions,
        )


class RouteService:
    def __init__(self, adapter: Any, region_lookup: RegionLookup):
        """adapter: any map adapter, usually the fallback composite."""
        self.adapter = adapter
        self.region_lookup = region_lookup

    async def analyze_route_risk(self, route: Route) -> RouteRiskAnalysis:
        regions: dict[int, RegionRisk] = {}
        for point in route.points:
            region = await self.region_lookup.find_region(point)
            if region is None or region.id in regions:
                continue
            regions[region.id] = RegionRisk(
                region_id=region.id,
                region_name=region.name,
                risk_index=float(region.risk_index or 0.0),
            )

        if not regions:
            return RouteRiskAnalysis()

        values = [r.risk_index for r in regions.values()]
        riskiest = max(regions.values(), key=lambda r: (r.risk_index, -r.region_id))
        max_risk = riskiest.risk_index
        warn = max_risk >= settings.risk_warning_threshold
        return RouteRiskAnalysis(
            max_risk_index=round(max_risk, 2),
            average_risk_index=round(sum(values) / len(values), 2),
            regions=list(regions.values()),
            high_risk_regions=[
                r for r in regions.values() if r.risk_index >= settings.risk_high_threshold
            ],
            requires_warning=warn,
            warning_message=(
                f"This route passes through {riskiest.region_name} "
                f"(risk index {riskiest.risk_index:.0f})"
                if warn
                else None
            ),
        )

    async def calculate_route_with_risk(
        self,
        origin: Coordinates,
        destination: Coordinates,
        options: Optional[RouteOptions] = None,
    ) -> RouteResult:
        route = await self.adapter.calculate_route(origin, destination, options)
        analysis = await self.analyze_route_risk(route)
        logger.info(
            "route_calculated",
            provider=route.provider,
            distance_m=route.distance,
            max_risk_index=analysis.max_risk_index,
            requires_warning=analysis.requires_warning,
        )
        return RouteResult.build(route, analysis)

    async def calculate_safe_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        count: int = 3,
    ) -> RouteResult:
        """
        Safest alternative among those at most 1.2x the shortest distance,
        ordered by (max risk, average risk, distance).
        """
        routes = await self.adapter.calculate_alternative_routes(origin, destination, count)
        if not routes:
            raise ProviderError.no_route(self.adapter.get_provider_name())

        shortest = min(r.distance for r in routes)
        candidates = [r for r in routes if r.distance <= shortest * SAFE_ROUTE_DISTANCE_FACTOR]

        scored = []
        for route in candidates:
            analysis = await self.analyze_route_risk(route)
            scored.append((analysis.max_risk_index, analysis.average_risk_index, route.distance, route, analysis))
        scored.sort(key=lambda item: item[:3])

        _, _, _, route, analysis = scored[0]
        logger.info(
            "safe_route_selected",
            provider=route.provider,
            candidates=len(candidates),
            alternatives=len(routes),
            max_risk_index=analysis.max_risk_index,
        )
        return RouteResult.build(route, analysis)
