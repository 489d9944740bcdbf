"""HERE adapter (Router v8 + Geocoding & Search v7)."""

from typing import Any

from walksafe.exceptions import ProviderError, ValidationError
from walksafe.geo import Coordinates
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.polyline import decode_flexible_polyline
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData

ROUTES_URL = "https://router.hereapi.com/v8/routes"
GEOCODE_URL = "https://geocode.search.hereapi.com/v1/geocode"
REVGEOCODE_URL = "https://revgeocode.search.hereapi.com/v1/revgeocode"

_MODES = {"walking": "pedestrian", "driving": "car", "bicycling": "bicycle", "transit": "pedestrian"}


class HereMapsAdapter(BaseMapAdapter):
    provider_name = "here"
    route_cost = 0.004
    geocode_cost = 0.003
    traffic_cost = 0.006

    def _route_params(
        self,
        origin: Coordinates,
        destination: Coordinates,
        options: RouteOptions,
        alternatives: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "transportMode": _MODES.get(options.mode, "pedestrian"),
            "origin": origin.as_lat_lng(),
            "destination": destination.as_lat_lng(),
            "return": "summary,polyline,actions,instructions,travelSummary,typicalDuration",
            "apiKey": self.api_key,
        }
        avoid = []
        if options.avoid_tolls:
            avoid.append("tollRoad")
        if options.avoid_highways:
            avoid.append("controlledAccessHighway")
        if avoid:
            params["avoid[features]"] = ",".join(avoid)
        if options.departure_time:
            params["departureTime"] = options.departure_time
        if alternatives:
            params["alternatives"] = alternatives
        return params

    def _parse_route(self, raw: dict, origin: Coordinates, destination: Coordinates) -> Route:
        sections = raw.get("sections") or []
        if not sections:
            raise ProviderError.invalid_response(self.provider_name, "route without sections")

        distance = duration = 0
        waypoints: list[Coordinates] = []
        instructions: list[str] = []
        polyline = sections[0].get("polyline", "")
        for section in sections:
            summary = section.get("summary") or section.get("travelSummary") or {}
            distance += summary.get("length", 0)
            duration += summary.get("duration", 0)
            try:
                points = decode_flexible_polyline(section.get("polyline", ""))
            except (ValueError, ValidationError) as e:
                raise ProviderError.invalid_response(self.provider_name, f"bad polyline: {e}")
            actions = section.get("actions") or []
            for action in actions:
                if action.get("instruction"):
                    instructions.append(action["instruction"])
                offset = action.get("offset")
                if offset is not None and 0 < offset < len(points) - 1:
                    waypoints.append(points[offset])

        return Route(
            origin=origin,
            destination=destination,
            distance=float(distance),
            duration=int(duration),
            provider=self.provider_name,
            polyline=polyline,
            waypoints=tuple(waypoints),
            instructions=tuple(instructions),
        )

    async def _routes(self, params: dict, operation: str, cost: float) -> list[dict]:
        body = await self._get_json(ROUTES_URL, params, operation=operation, cost=cost)
        routes = body.get("routes") or []
        if not routes:
            raise ProviderError.no_route(self.provider_name)
        return routes

    async def _fetch_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions
    ) -> Route:
        routes = await self._routes(
            self._route_params(origin, destination, options), "calculate_route", self.route_cost
        )
        return self._parse_route(routes[0], origin, destination)

    async def _fetch_alternatives(
        self, origin: Coordinates, destination: Coordinates, count: int
    ) -> list[Route]:
        routes = await self._routes(
            self._route_params(origin, destination, RouteOptions(), alternatives=max(count - 1, 0)),
            "calculate_alternative_routes",
            self.route_cost,
        )
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    # ── Geocoding ─────────────────────────────────────────────────────

    def _parse_address(self, item: dict) -> Address:
        address = item.get("address") or {}
        position = item.get("position") or {}
        return Address(
            formatted_address=address.get("label") or item.get("title", ""),
            coordinates=self._coords(position.get("lat"), position.get("lng")),
            street=address.get("street"),
            number=address.get("houseNumber"),
            neighborhood=address.get("district"),
            city=address.get("city"),
            state=address.get("stateCode") or address.get("state"),
            country=address.get("countryName"),
            postal_code=address.get("postalCode"),
        )

    async def _fetch_geocode(self, address: str) -> list[Address]:
        body = await self._get_json(
            GEOCODE_URL,
            {"q": address, "limit": 5, "apiKey": self.api_key},
            operation="geocode",
            cost=self.geocode_cost,
        )
        return [self._parse_address(i) for i in body.get("items") or []]

    async def _fetch_reverse(self, coords: Coordinates) -> Address:
        query = coords.as_lat_lng()
        body = await self._get_json(
            REVGEOCODE_URL,
            {"at": query, "limit": 1, "apiKey": self.api_key},
            operation="reverse_geocode",
            cost=self.geocode_cost,
        )
        items = body.get("items") or []
        if not items:
            raise ProviderError.geocode_not_found(self.provider_name, query)
        return self._parse_address(items[0])

    # ── Traffic ───────────────────────────────────────────────────────

    async def _fetch_traffic(self, route: Route) -> TrafficData:
        # departureTime defaults to now on the HERE side, which enables live traffic
        params = self._route_params(route.origin, route.destination, RouteOptions(mode="driving"))
        params["return"] = "summary,travelSummary,typicalDuration"
        routes = await self._routes(params, "get_traffic_data", self.traffic_cost)
        current = typical = 0
        for section in routes[0].get("sections") or []:
            summary = section.get("travelSummary") or section.get("summary") or {}
            section_duration = summary.get("duration", 0)
            current += section_duration
            typical += summary.get("typicalDuration", summary.get("baseDuration", section_duration))
        return TrafficData.from_durations(current, typical)
