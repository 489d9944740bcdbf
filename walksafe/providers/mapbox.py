"""Mapbox adapter (Directions v5 + Places geocoding). Mapbox speaks [lng, lat]."""

from typing import Any, Optional
from urllib.parse import quote

import httpx

from walksafe.exceptions import ProviderError, ProviderErrorCode
from walksafe.geo import Coordinates
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData

DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox"
GEOCODE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"

_PROFILES = {"walking": "walking", "driving": "driving", "bicycling": "cycling", "transit": "walking"}


class MapboxAdapter(BaseMapAdapter):
    provider_name = "mapbox"
    route_cost = 0.0005
    geocode_cost = 0.0005
    traffic_cost = 0.001

    # ── Errors ────────────────────────────────────────────────────────

    def _error_for_code(self, code: str, message: str = "") -> Optional[ProviderError]:
        if code in ("Ok", ""):
            return None
        if code in ("NoRoute", "NoSegment"):
            return ProviderError.no_route(self.provider_name)
        if code in ("Forbidden", "NotAuthorized", "InvalidToken"):
            return ProviderError.auth_failed(self.provider_name)
        if code == "InvalidInput":
            return ProviderError(
                f"Mapbox rejected the request: {message or code}",
                self.provider_name,
                ProviderErrorCode.INVALID_RESPONSE,
                is_retryable=False,
            )
        if code == "ProfileNotFound":
            return ProviderError.invalid_response(self.provider_name, code)
        return None

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            error = self._error_for_code(body.get("code", ""), body.get("message", ""))
            if error is not None:
                return error
        return super()._error_from_response(response)

    # ── Routes ────────────────────────────────────────────────────────

    def _directions_url(self, profile: str, origin: Coordinates, destination: Coordinates) -> str:
        return f"{DIRECTIONS_URL}/{profile}/{origin.as_lng_lat()};{destination.as_lng_lat()}"

    def _directions_params(self, options: RouteOptions, alternatives: bool = False) -> dict[str, Any]:
        params: dict[str, Any] = {
            "access_token": self.api_key,
            "geometries": "polyline",
            "overview": "full",
            "steps": "true",
            "alternatives": "true" if alternatives else "false",
        }
        exclude = []
        if options.avoid_tolls:
            exclude.append("toll")
        if options.avoid_highways:
            exclude.append("motorway")
        if exclude:
            params["exclude"] = ",".join(exclude)
        if options.departure_time and options.departure_time != "now":
            params["depart_at"] = options.departure_time
        return params

    async def _directions(
        self,
        profile: str,
        origin: Coordinates,
        destination: Coordinates,
        params: dict[str, Any],
        operation: str,
        cost: float,
    ) -> list[dict]:
        body = await self._get_json(
            self._directions_url(profile, origin, destination),
            params,
            operation=operation,
            cost=cost,
        )
        error = self._error_for_code(body.get("code", "Ok"), body.get("message", ""))
        if error is not None:
            raise error
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
                maneuver = step.get("maneuver") or {}
                if maneuver.get("instruction"):
                    instructions.append(maneuver["instruction"])
                location = maneuver.get("location")
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
        routes = await self._directions(
            _PROFILES.get(options.mode, "walking"),
            origin,
            destination,
            self._directions_params(options),
            "calculate_route",
            self.route_cost,
        )
        return self._parse_route(routes[0], origin, destination)

    async def _fetch_alternatives(
        self, origin: Coordinates, destination: Coordinates, count: int
    ) -> list[Route]:
        routes = await self._directions(
            "walking",
            origin,
            destination,
            self._directions_params(RouteOptions(), alternatives=True),
            "calculate_alternative_routes",
            self.route_cost,
        )
        return [self._parse_route(r, origin, destination) for r in routes[:count]]

    # ── Geocoding ─────────────────────────────────────────────────────

    def _parse_feature(self, feature: dict) -> Address:
        context: dict[str, dict] = {}
        for item in feature.get("context") or []:
            kind = str(item.get("id", "")).split(".", 1)[0]
            context.setdefault(kind, item)

        def text(kind: str) -> Optional[str]:
            item = context.get(kind)
            return item.get("text") if item else None

        region = context.get("region")
        state = None
        if region:
            short = region.get("short_code") or ""
            state = short.split("-")[-1].upper() if short else region.get("text")
        center = feature.get("center") or [0.0, 0.0]
        return Address(
            formatted_address=feature.get("place_name", ""),
            coordinates=self._coords(center[1], center[0]),
            street=feature.get("text"),
            number=feature.get("address"),
            neighborhood=text("neighborhood") or text("locality"),
            city=text("place"),
            state=state,
            country=text("country"),
            postal_code=text("postcode"),
        )

    async def _fetch_geocode(self, address: str) -> list[Address]:
        body = await self._get_json(
            f"{GEOCODE_URL}/{quote(address, safe='')}.json",
            {"access_token": self.api_key, "limit": 5},
            operation="geocode",
            cost=self.geocode_cost,
        )
        return [self._parse_feature(f) for f in body.get("features") or []]

    async def _fetch_reverse(self, coords: Coordinates) -> Address:
        body = await self._get_json(
            f"{GEOCODE_URL}/{coords.as_lng_lat()}.json",
            {"access_token": self.api_key, "limit": 1},
            operation="reverse_geocode",
            cost=self.geocode_cost,
        )
        features = body.get("features") or []
        if not features:
            raise ProviderError.geocode_not_found(self.provider_name, coords.as_lat_lng())
        return self._parse_feature(features[0])

    # ── Traffic ───────────────────────────────────────────────────────

    async def _fetch_traffic(self, route: Route) -> TrafficData:
        routes = await self._directions(
            "driving-traffic",
            route.origin,
            route.destination,
            {"access_token": self.api_key, "overview": "false"},
            "get_traffic_data",
            self.traffic_cost,
        )
        current = int(round(routes[0].get("duration", 0)))
        typical = int(round(routes[0].get("duration_typical", current)))
        return TrafficData.from_durations(current, typical)
