"""Google Maps adapter (Directions + Geocoding JSON APIs)."""

import html
import re
from typing import Any, Optional

from walksafe.exceptions import ProviderError, QuotaExceededError
from walksafe.geo import Coordinates
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData

DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

_TAG_RE = re.compile(r"<[^>]+>")

_MODES = {"walking": "walking", "driving": "driving", "bicycling": "bicycling", "transit": "transit"}


def strip_html(text: str) -> str:
    return " ".join(html.unescape(_TAG_RE.sub(" ", text or "")).split())


class GoogleMapsAdapter(BaseMapAdapter):
    provider_name = "google"
    route_cost = 0.005
    geocode_cost = 0.005
    traffic_cost = 0.01

    # ── Status handling ───────────────────────────────────────────────

    def _check_status(self, body: dict, not_found: ProviderError) -> None:
        status = body.get("status", "OK")
        if status == "OK":
            return
        if status in ("ZERO_RESULTS", "NOT_FOUND"):
            raise not_found
        if status == "REQUEST_DENIED":
            raise ProviderError.auth_failed(self.provider_name)
        if status in ("OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT"):
            raise QuotaExceededError(self.provider_name, f"Google quota exceeded ({status})")
        raise ProviderError.invalid_response(
            self.provider_name, f"{status}: {body.get('error_message', '')}".rstrip(": ")
        )

    # ── Routes ────────────────────────────────────────────────────────

    def _directions_params(
        self,
        origin: Coordinates,
        destination: Coordinates,
        options: RouteOptions,
        alternatives: bool = False,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "origin": origin.as_lat_lng(),
            "destination": destination.as_lat_lng(),
            "mode": _MODES.get(options.mode, "walking"),
            "key": self.api_key,
        }
        avoid = []
        if options.avoid_tolls:
            avoid.append("tolls")
        if options.avoid_highways:
            avoid.append("highways")
        if avoid:
            params["avoid"] = "|".join(avoid)
        if options.departure_time:
            params["departure_time"] = options.departure_time
        if alternatives:
            params["alternatives"] = "true"
        return params

    def _parse_route(self, raw: dict, origin: Coordinates, destination: Coordinates) -> Route:
        legs = raw.get("legs") or []
        if not legs:
            raise ProviderError.invalid_response(self.provider_name, "route without legs")
        distance = sum(leg.get("distance", {}).get("value", 0) for leg in legs)
        duration = sum(leg.get("duration", {}).get("value", 0) for leg in legs)

        waypoints: list[Coordinates] = []
        instructions: list[str] = []
        for leg in legs:
            steps = leg.get("steps") or []
            for i, step in enumerate(steps):
                text = strip_html(step.get("html_instructions", ""))
                if text:
                    instructions.append(text)
                end = step.get("end_location")
                if end and i < len(steps) - 1:
                    waypoints.append(self._coords(end["lat"], end["lng"]))

        return Route(
            origin=origin,
            destination=destination,
            distance=float(distance),
            duration=int(duration),
            provider=self.provider_name,
            polyline=(raw.get("overview_polyline") or {}).get("points", ""),
            waypoints=tuple(waypoints),
            instructions=tuple(instructions),
        )

    async def _fetch_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions
    ) -> Route:
        body = await self._get_json(
            DIRECTIONS_URL,
            self._directions_params(origin, destination, options),
            operation="calculate_route",
            cost=self.route_cost,
        )
        self._check_status(body, ProviderError.no_route(self.provider_name))
        routes = body.get("routes") or []
        if not routes:
            raise ProviderError.no_route(self.provider_name)
        return self._parse_route(routes[0], origin, destination)

    async def _fetch_alternatives(
        self, origin: Coordinates, destination: Coordinates, count: int
    ) -> list[Route]:
        body = await self._get_json(
            DIRECTIONS_URL,
            self._directions_params(origin, destination, RouteOptions(), alternatives=True),
            operation="calculate_alternative_routes",
            cost=self.route_cost,
        )
        self._check_status(body, ProviderError.no_route(self.provider_name))
        routes = body.get("routes") or []
        if not routes:
            raise ProviderError.no_route(self.provider_name)
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    # ── Geocoding ─────────────────────────────────────────────────────

    def _parse_address(self, raw: dict) -> Address:
        components: dict[str, dict] = {}
        for comp in raw.get("address_components") or []:
            for kind in comp.get("types", []):
                components.setdefault(kind, comp)

        def long(kind: str) -> Optional[str]:
            comp = components.get(kind)
            return comp.get("long_name") if comp else None

        state = components.get("administrative_area_level_1")
        location = (raw.get("geometry") or {}).get("location") or {}
        return Address(
            formatted_address=raw.get("formatted_address", ""),
            coordinates=self._coords(location.get("lat"), location.get("lng")),
            street=long("route"),
            number=long("street_number"),
            neighborhood=long("sublocality") or long("neighborhood"),
            city=long("locality") or long("administrative_area_level_2"),
            state=state.get("short_name") if state else None,
            country=long("country"),
            postal_code=long("postal_code"),
        )

    async def _fetch_geocode(self, address: str) -> list[Address]:
        body = await self._get_json(
            GEOCODE_URL,
            {"address": address, "key": self.api_key},
            operation="geocode",
            cost=self.geocode_cost,
        )
        self._check_status(body, ProviderError.geocode_not_found(self.provider_name, address))
        return [self._parse_address(r) for r in body.get("results") or []]

    async def _fetch_reverse(self, coords: Coordinates) -> Address:
        query = coords.as_lat_lng()
        body = await self._get_json(
            GEOCODE_URL,
            {"latlng": query, "key": self.api_key},
            operation="reverse_geocode",
            cost=self.geocode_cost,
        )
        self._check_status(body, ProviderError.geocode_not_found(self.provider_name, query))
        results = body.get("results") or []
        if not results:
            raise ProviderError.geocode_not_found(self.provider_name, query)
        return self._parse_address(results[0])

    # ── Traffic ───────────────────────────────────────────────────────

    async def _fetch_traffic(self, route: Route) -> TrafficData:
        params = self._directions_params(
            route.origin, route.destination, RouteOptions(mode="driving", departure_time="now")
        )
        body = await self._get_json(
            DIRECTIONS_URL, params, operation="get_traffic_data", cost=self.traffic_cost
        )
        self._check_status(body, ProviderError.no_route(self.provider_name))
        routes = body.get("routes") or []
        if not routes or not routes[0].get("legs"):
            raise ProviderError.no_route(self.provider_name)
        leg = routes[0]["legs"][0]
        typical = leg.get("duration", {}).get("value", 0)
        current = (leg.get("duration_in_traffic") or {}).get("value", typical)
        return TrafficData.from_durations(current, typical)
