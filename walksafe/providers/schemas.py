"""
Provider value objects: Route, RouteOptions, Address, TrafficData.

Plain frozen dataclasses with to_dict/from_dict so results can be cached
as JSON and rebuilt without loss.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from walksafe.geo import Coordinates


def _route_id(provider: str) -> str:
    return f"{provider}_route_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class RouteOptions:
    avoid_tolls: bool = False
    avoid_highways: bool = False
    prefer_safe_route: bool = False
    departure_time: Optional[str] = None
    # walking | driving | bicycling | transit
    mode: str = "walking"

    def to_dict(self) -> dict[str, Any]:
        return {
            "avoid_tolls": self.avoid_tolls,
            "avoid_highways": self.avoid_highways,
            "prefer_safe_route": self.prefer_safe_route,
            "departure_time": self.departure_time,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouteOptions":
        return cls(
            avoid_tolls=bool(data.get("avoid_tolls", False)),
            avoid_highways=bool(data.get("avoid_highways", False)),
            prefer_safe_route=bool(data.get("prefer_safe_route", False)),
            departure_time=data.get("departure_time"),
            mode=data.get("mode") or "walking",
        )


@dataclass(frozen=True)
class Route:
    origin: Coordinates
    destination: Coordinates
    distance: float                 # meters
    duration: int                   # seconds
    provider: str
    polyline: str = ""
    waypoints: tuple[Coordinates, ...] = ()
    instructions: tuple[str, ...] = ()
    id: str = ""

    def __post_init__(self):
        if not self.id:
            object.__setattr__(self, "id", _route_id(self.provider))
        object.__setattr__(self, "waypoints", tuple(self.waypoints))
        object.__setattr__(self, "instructions", tuple(self.instructions))

    @property
    def points(self) -> list[Coordinates]:
        """origin + waypoints + destination."""
        return [self.origin, *self.waypoints, self.destination]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "origin": self.origin.to_dict(),
            "destination": self.destination.to_dict(),
            "waypoints": [wp.to_dict() for wp in self.waypoints],
            "distance": self.distance,
            "duration": self.duration,
            "polyline": self.polyline,
            "provider": self.provider,
            "instructions": list(self.instructions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Route":
        return cls(
            id=data.get("id", ""),
            origin=Coordinates.from_dict(data["origin"]),
            destination=Coordinates.from_dict(data["destination"]),
            waypoints=tuple(Coordinates.from_dict(wp) for wp in data.get("waypoints", [])),
            distance=float(data.get("distance", 0)),
            duration=int(data.get("duration", 0)),
            polyline=data.get("polyline", ""),
            provider=data.get("provider", "unknown"),
            instructions=tuple(data.get("instructions", [])),
        )


@dataclass(frozen=True)
class Address:
    formatted_address: str
    coordinates: Coordinates
    street: Optional[str] = None
    number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "formatted_address": self.formatted_address,
            "coordinates": self.coordinates.to_dict(),
            "street": self.street,
            "number": self.number,
            "neighborhood": self.neighborhood,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            formatted_address=data.get("formatted_address", ""),
            coordinates=Coordinates.from_dict(data["coordinates"]),
            street=data.get("street"),
            number=data.get("number"),
            neighborhood=data.get("neighborhood"),
            city=data.get("city"),
            state=data.get("state"),
            country=data.get("country"),
            postal_code=data.get("postal_code"),
        )


def traffic_condition(delay_ratio: float) -> str:
    if delay_ratio <= 0.1:
        return "free"
    if delay_ratio <= 0.25:
        return "light"
    if delay_ratio <= 0.5:
        return "moderate"
    if delay_ratio <= 1.0:
        return "heavy"
    return "severe"


@dataclass(frozen=True)
class TrafficData:
    current_duration: int
    typical_duration: int
    delay_ratio: float
    traffic_condition: str
    segments: tuple = field(default_factory=tuple)

    @classmethod
    def from_durations(cls, current: int, typical: Optional[int] = None) -> "TrafficData":
        current = int(current or 0)
        typical = current if typical is None else int(typical)
        ratio = (current - typical) / typical if typical > 0 else 0.0
        return cls(
            current_duration=current,
            typical_duration=typical,
            delay_ratio=ratio,
            traffic_condition=traffic_condition(ratio),
        )

    def has_significant_delay(self, threshold: float = 0.1) -> bool:
        return self.delay_ratio > threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_duration": self.current_duration,
            "typical_duration": self.typical_duration,
            "delay_ratio": self.delay_ratio,
            "traffic_condition": self.traffic_condition,
            "segments": list(self.segments),
        }
