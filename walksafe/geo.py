"""
Geo primitives.

- Coordinates: validated lat/lng with haversine distance
- Polygon containment: ray casting against stored ring vertices
- RegionLookup: pluggable "which region contains this point" interface
"""

import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Sequence

from walksafe.exceptions import ValidationError

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class Coordinates:
    """A WGS84 point. Raises ValidationError when out of range."""

    latitude: float
    longitude: float

    def __post_init__(self):
        try:
            lat = float(self.latitude)
            lng = float(self.longitude)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Coordinates must be numeric, got ({self.latitude!r}, {self.longitude!r})",
                field="coordinates",
            )
        if math.isnan(lat) or not -90.0 <= lat <= 90.0:
            raise ValidationError(f"Latitude {self.latitude} out of range [-90, 90]", field="latitude")
        if math.isnan(lng) or not -180.0 <= lng <= 180.0:
            raise ValidationError(f"Longitude {self.longitude} out of range [-180, 180]", field="longitude")
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lng)

    def distance_to(self, other: "Coordinates") -> float:
        """Great-circle distance in meters."""
        lat1, lat2 = math.radians(self.latitude), math.radians(other.latitude)
        dlat = lat2 - lat1
        dlng = math.radians(other.longitude - self.longitude)
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
        return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    def as_lat_lng(self) -> str:
        return f"{self.latitude},{self.longitude}"

    def as_lng_lat(self) -> str:
        return f"{self.longitude},{self.latitude}"

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.latitude, "lng": self.longitude}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Coordinates":
        lat = data.get("lat", data.get("latitude"))
        lng = data.get("lng", data.get("longitude", data.get("lon")))
        if lat is None or lng is None:
            raise ValidationError("Coordinates require lat and lng", field="coordinates")
        return cls(lat, lng)


# ── Polygons ───────────────────────────────────────────────────────────────


def point_in_polygon(point: Coordinates, ring: Sequence[Sequence[float]]) -> bool:
    """
    Ray casting test. `ring` is a list of [lat, lng] vertices; closing vertex optional.

    Points exactly on an edge may fall either side.
    """
    n = len(ring)
    if n < 3:
        return False
    x, y = point.longitude, point.latitude
    inside = False
    j = n - 1
    for i in range(n):
        yi, xi = ring[i][0], ring[i][1]
        yj, xj = ring[j][0], ring[j][1]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def bounding_box(ring: Iterable[Sequence[float]]) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) of a ring."""
    lats, lngs = zip(*((v[0], v[1]) for v in ring))
    return min(lats), max(lats), min(lngs), max(lngs)


def rectangle(south: float, west: float, north: float, east: float) -> list[list[float]]:
    """Closed rectangular ring, used by grid seeding and tests."""
    return [[south, west], [south, east], [north, east], [north, west], [south, west]]


# ── Region lookup ──────────────────────────────────────────────────────────


class RegionLike(Protocol):
    id: int
    name: str
    boundary: list


class RegionLookup(Protocol):
    """Resolves the region containing a point. Implementations may hit a DB or a spatial index."""

    async def find_region(self, point: Coordinates) -> Optional[Any]:
        ...


class InMemoryRegionLookup:
    """Region lookup over a fixed set of regions (seeding, tests, small deployments)."""

    def __init__(self, regions: Iterable[RegionLike] = ()):
        self._regions: list[RegionLike] = list(regions)

    def add(self, region: RegionLike) -> None:
        self._regions.append(region)

    async def find_region(self, point: Coordinates) -> Optional[RegionLike]:
        for region in sorted(self._regions, key=lambda r: r.id):
            if point_in_polygon(point, region.boundary):
                return region
        return None
