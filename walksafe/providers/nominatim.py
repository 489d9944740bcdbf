"""
OpenStreetMap adapter: Nominatim for geocoding, OSRM for routing.

Free of charge and key-less, so it is always configured. Nominatim's usage
policy requires an identifying User-Agent on every request.
"""

from typing import Any, Optional

from walksafe.config import settings
from walksafe.exceptions import ProviderError
from walksafe.geo import Coordinates
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
OSRM_URL = "https://router.project-osrm.org/route/v1"

_PROFILES = {"walking": "foot", "driving": "driving", "bicycling": "bike", "transit": "foot"}


def osrm_instruction(step: dict) -> str:
    maneuver = step.get("maneuver") or {}
    kind = maneuver.get("type", "")
    modifier = maneuver.get("modifier", "")
    name = step.get("name") or ""
    if kind == "depart":
        text = f"Head {modifier}".strip() if modifier else "Depart"
    elif kind == "arrive":
        return "Arrive at destination"
    else:
        text = " ".join(part for part in (kind.capitalize(), modifier) if part)
    if name:
        text = f"{text} onto {name}"
    return text


class NominatimAdapter(BaseMapAdapter):
    provider_name = "nominatim"

    def __init__(self, *args, user_agent: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_agent = user_agent or settings.nominatim_user_agent

    def is_configured(self) -> bool:
        return True

    @property
    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent}

    # ── Routes (OSRM) ─────────────────────────────────────────────────

    async def _osrm(
        self,
        profile: str,
        origin: Coordinates,
        destination: Coordinates,
        alternatives: int,
        operation: str,
    ) -> list[dict]:
        params: dict[str, Any] = {
            "overview": "full",
            "geometries": "polyline",
            "steps": "true",
            "alternatives": str(alternatives) if alternatives > 1 else "false",
        }
        body = await self._get_json(
            f"{OSRM_URL}/{profile}/{origin.as_lng_lat()};{destination.as_lng_lat()}",
            params,
            operation=operation,
            cost=self.route_cost,
            headers=self._headers,
        )
        code = body.get("code", "Ok")
        if code in ("NoRoute", "NoSegment"):
            raise ProviderError.no_route(self.provider_name)
        if code != "Ok":
            raise ProviderError.invalid_response(self.provider_name, f"OSRM {code}: {body.get('message', '')}")
        routes = body.get("routes") or []
        if not routes:
            raise ProviderError.no_route(self.provider_name)
        return routes

    def _parse_route(self, raw: dict, origin: Coordinates, destination: Coordinates) -> Route:
        waypoints: list[Coordinates] = []
        instructions: list[str] = []
        for leg in raw.get("legs") or []:
            steps = leg.get("steps") or []
            for i, step in enumerate(steps):
                instructions.append(osrm_instruction(step))
                location = (step.get("maneuver") or {}).get("location")
                if location and 0 < i < len(steps) - 1:
                    waypoints.append(self._coords(location[1], location[0]))
        return Route(
            origin=origin,
            destination=destination,
            distance=float(raw.get("distance", 0)),
            duration=int(round(raw.get("duration", 0))),
            provider=self.provider_name,
            polyline=raw.get("geometry") or "",
            waypoints=tuple(waypoints),
            instructions=tuple(instructions),
        )

    async def _fetch_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions
    ) -> Route:
        routes = await self._osrm(
            _PROFILES.get(options.mode, "foot"), origin, destination, 1, "calculate_route"
        )
        return self._parse_route(routes[0], origin, destination)

    async def _fetch_alternatives(
        self, origin: Coordinates, destination: Coordinates, count: int
    ) -> list[Route]:
        routes = await self._osrm("foot", origin, destination, count, "calculate_alternative_routes")
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    # ── Geocoding (Nominatim) ─────────────────────────────────────────

    def _parse_place(self, place: dict) -> Address:
        address = place.get("address") or {}
        return Address(
            formatted_address=place.get("display_name", ""),
            coordinates=self._coords(place.get("lat"), place.get("lon")),
            street=address.get("road"),
            number=address.get("house_number"),
            neighborhood=address.get("suburb") or address.get("neighbourhood"),
            city=address.get("city") or address.get("town") or address.get("village"),
            state=address.get("state"),
            country=address.get("country"),
            postal_code=address.get("postcode"),
        )

    async def _fetch_geocode(self, address: str) -> list[Address]:
        body = await self._get_json(
            f"{NOMINATIM_URL}/search",
            {"q": address, "format": "jsonv2", "addressdetails": 1, "limit": 5},
            operation="geocode",
            cost=self.geocode_cost,
            headers=self._headers,
        )
        if not isinstance(body, list):
            raise ProviderError.invalid_response(self.provider_name, "search did not return a list")
        return [self._parse_place(p) for p in body]

    async def _fetch_reverse(self, coords: Coordinates) -> Address:
        body = await self._get_json(
            f"{NOMINATIM_URL}/reverse",
            {
                "lat": coords.latitude,
                "lon": coords.longitude,
                "format": "jsonv2",
                "addressdetails": 1,
            },
            operation="reverse_geocode",
            cost=self.geocode_cost,
            headers=self._headers,
        )
        if not isinstance(body, dict) or "error" in body or "lat" not in body:
            raise ProviderError.geocode_not_found(self.provider_name, coords.as_lat_lng())
        return self._parse_place(body)

    # ── Traffic ───────────────────────────────────────────────────────

    async def _fetch_traffic(self, route: Route) -> TrafficData:
        # No live traffic on OSM: the routed duration is both current and typical
        return TrafficData.from_durations(route.duration, route.duration)

    async def _probe(self) -> None:
        await self._get_json(
            f"{NOMINATIM_URL}/status",
            {"format": "json"},
            operation="health_check",
            headers=self._headers,
        )
