"""
Map adapter contract.

Every provider adapter exposes the same operations:
    calculate_route, calculate_alternative_routes, geocode, reverse_geocode,
    get_traffic_data, get_provider_name, is_available (+ async health_check)

The public methods here own the shared pipeline:
    validate input -> cache lookup -> quota admission -> retry(provider call)

Subclasses only implement the _fetch_* hooks that talk to the provider.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from walksafe.config import settings
from walksafe.exceptions import ProviderError, QuotaExceededError, ValidationError
from walksafe.geo import Coordinates
from walksafe.providers.quota import QuotaManager
from walksafe.providers.retry import RetryExecutor
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData
from walksafe.services.traffic_cache import TrafficCacheManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_GEOCODE_RESULTS = 5


def require_coordinates(value: Any, field: str) -> Coordinates:
    if isinstance(value, Coordinates):
        return value
    if isinstance(value, dict):
        return Coordinates.from_dict(value)
    raise ValidationError(f"{field} must be Coordinates, got {type(value).__name__}", field=field)


def require_address(address: Any) -> str:
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Address must be a non-empty string", field="address")
    return address.strip()


class BaseMapAdapter(ABC):
    """Shared plumbing for provider adapters. One instance per provider."""

    provider_name: str = "base"

    # USD per call
    route_cost: float = 0.0
    geocode_cost: float = 0.0
    traffic_cost: float = 0.0

    def __init__(
        self,
        client: httpx.AsyncClient,
        quota: QuotaManager,
        retry: Optional[RetryExecutor] = None,
        cache: Optional[TrafficCacheManager] = None,
        api_key: str = "",
        timeout: Optional[float] = None,
        route_cache_ttl: Optional[int] = None,
        geocode_cache_ttl: Optional[int] = None,
    ):
        self.client = client
        self.quota = quota
        self.retry = retry or RetryExecutor()
        self.cache = cache
        self.api_key = api_key
        self.timeout = settings.provider_timeout_seconds if timeout is None else timeout
        self.route_cache_ttl = (
            settings.route_cache_ttl_seconds if route_cache_ttl is None else route_cache_ttl
        )
        self.geocode_cache_ttl = (
            settings.geocode_cache_ttl_seconds if geocode_cache_ttl is None else geocode_cache_ttl
        )

    # ── Contract ──────────────────────────────────────────────────────

    def get_provider_name(self) -> str:
        return self.provider_name

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def is_available(self) -> bool:
        """Cheap, side-effect-free: configured and quota not exhausted."""
        return self.is_configured() and not self.quota.is_exhausted(self.provider_name)

    async def health_check(self) -> bool:
        """Network probe. Never raises."""
        if not self.is_configured():
            return False
        try:
            await self._probe()
            return True
        except Exception as e:
            logger.warning("provider_health_check_failed", provider=self.provider_name, error=str(e))
            return False

    async def calculate_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        options: Optional[RouteOptions] = None,
    ) -> Route:
        origin = require_coordinates(origin, "origin")
        destination = require_coordinates(destination, "destination")
        options = options or RouteOptions()
        return await self._dispatch(
            "calculate_route",
            lambda: self._fetch_route(origin, destination, options),
            cache_key=self._cache_key("route", origin, destination, options.to_dict()),
            ttl=self.route_cache_ttl,
            serialize=Route.to_dict,
            deserialize=Route.from_dict,
        )

    async def calculate_alternative_routes(
        self,
        origin: Coordinates,
        destination: Coordinates,
        count: int = 3,
    ) -> list[Route]:
        origin = require_coordinates(origin, "origin")
        destination = require_coordinates(destination, "destination")
        if count < 1:
            raise ValidationError("count must be >= 1", field="count")
        routes = await self._dispatch(
            "calculate_alternative_routes",
            lambda: self._fetch_alternatives(origin, destination, count),
        )
        return routes[:count]

    async def geocode(self, address: str) -> list[Address]:
        query = require_address(address)
        return await self._dispatch(
            "geocode",
            lambda: self._geocode_capped(query),
            cache_key=self._cache_key("geocode", options={"q": query.lower()}),
            ttl=self.geocode_cache_ttl,
            serialize=lambda results: [a.to_dict() for a in results],
            deserialize=lambda data: [Address.from_dict(a) for a in data],
        )

    async def reverse_geocode(self, coords: Coordinates) -> Address:
        coords = require_coordinates(coords, "coordinates")
        return await self._dispatch(
            "reverse_geocode",
            lambda: self._fetch_reverse(coords),
            cache_key=self._cache_key("reverse_geocode", coords),
            ttl=self.geocode_cache_ttl,
            serialize=Address.to_dict,
            deserialize=Address.from_dict,
        )

    async def get_traffic_data(self, route: Route) -> TrafficData:
        if not isinstance(route, Route):
            raise ValidationError("route must be a Route", field="route")
        return await self._dispatch("get_traffic_data", lambda: self._fetch_traffic(route))

    # ── Provider hooks ────────────────────────────────────────────────

    @abstractmethod
    async def _fetch_route(
        self, origin: Coordinates, destination: Coordinates, options: RouteOptions
    ) -> Route: ...

    @abstractmethod
    async def _fetch_alternatives(
        self, origin: Coordinates, destination: Coordinates, count: int
    ) -> list[Route]: ...

    @abstractmethod
    async def _fetch_geocode(self, address: str) -> list[Address]: ...

    @abstractmethod
    async def _fetch_reverse(self, coords: Coordinates) -> Address: ...

    @abstractmethod
    async def _fetch_traffic(self, route: Route) -> TrafficData: ...

    async def _probe(self) -> None:
        await self._fetch_geocode("Times Square, New York")

    # ── Response parsing ──────────────────────────────────────────────

    def _coords(self, lat: Any, lng: Any) -> Coordinates:
        """Coordinates from a provider payload; bad values are the provider's fault."""
        try:
            return Coordinates(float(lat), float(lng))
        except (ValidationError, TypeError, ValueError) as e:
            message = e.message if isinstance(e, ValidationError) else str(e)
            raise ProviderError.invalid_response(self.provider_name, f"bad coordinates: {message}")

    # ── Pipeline ──────────────────────────────────────────────────────

    async def _geocode_capped(self, query: str) -> list[Address]:
        results = await self._fetch_geocode(query)
        if not results:
            raise ProviderError.geocode_not_found(self.provider_name, query)
        return results[:MAX_GEOCODE_RESULTS]

    def _cache_key(
        self,
        operation: str,
        origin: Any = None,
        destination: Any = None,
        options: Optional[dict] = None,
    ) -> Optional[str]:
        if self.cache is None:
            return None
        return self.cache.make_key(
            self.provider_name, origin, destination, {"op": operation, **(options or {})}
        )

    async def _dispatch(
        self,
        operation: str,
        fetch: Callable[[], Awaitable[T]],
        cache_key: Optional[str] = None,
        ttl: Optional[int] = None,
        serialize: Callable[[T], Any] = lambda v: v,
        deserialize: Callable[[Any], T] = lambda v: v,
    ) -> T:
        # Cache hits cost nothing, so the quota gate only guards live calls
        async def live() -> T:
            if not self.quota.should_allow_call(self.provider_name):
                logger.warning(
                    "provider_call_rejected_by_quota", provider=self.provider_name, operation=operation
                )
                raise QuotaExceededError(self.provider_name)
            return await self.retry.execute(
                fetch, provider=self.provider_name, operation_name=operation
            )

        if self.cache is None or cache_key is None:
            return await live()
        return await self.cache.remember(
            cache_key, live, ttl, serialize=serialize, deserialize=deserialize
        )

    # ── HTTP ──────────────────────────────────────────────────────────

    async def _get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        operation: str = "request",
        cost: float = 0.0,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """GET url and decode JSON; transport and status failures become ProviderError."""
        try:
            response = await self.client.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException:
            raise ProviderError.timeout(self.provider_name, self.timeout)
        except httpx.TransportError as e:
            raise ProviderError.unavailable(self.provider_name, str(e) or type(e).__name__)

        self.quota.record_call(self.provider_name, operation, cost)

        if response.status_code >= 400:
            raise self._error_from_response(response)
        try:
            return response.json()
        except ValueError:
            raise ProviderError.invalid_response(self.provider_name, "response body is not JSON")

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        return ProviderError.from_status(self.provider_name, response.status_code, response.text)
