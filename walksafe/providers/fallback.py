"""
Fallback composite over an ordered list of adapters.

Tries each adapter in priority order and returns the first success.
- quota exhausted -> skipped without a call
- not available (unconfigured) -> skipped
- ProviderError (incl. retries exhausted) -> next adapter
- ValidationError -> re-raised at once (no provider can fix bad input)

When every adapter fails, raises ServiceUnavailableError carrying each
provider's error.
"""

from typing import Awaitable, Callable, Optional, Sequence, TypeVar

import structlog

from walksafe.exceptions import (
    ProviderError,
    QuotaExceededError,
    ServiceUnavailableError,
    ValidationError,
)
from walksafe.geo import Coordinates
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.quota import QuotaManager
from walksafe.providers.schemas import Address, Route, RouteOptions, TrafficData

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FallbackMapAdapter:
    """Same contract as a single adapter; delegates down the chain."""

    def __init__(self, adapters: Sequence[BaseMapAdapter], quota: QuotaManager):
        if not adapters:
            raise ValueError("FallbackMapAdapter needs at least one adapter")
        self.adapters = list(adapters)
        self.quota = quota
        self._last_provider: Optional[str] = None

    def get_provider_name(self) -> str:
        """Provider that served the last successful call (primary before any call)."""
        return self._last_provider or self.adapters[0].get_provider_name()

    def is_available(self) -> bool:
        return any(adapter.is_available() for adapter in self.adapters)

    async def health_check(self) -> bool:
        for adapter in self.adapters:
            if await adapter.health_check():
                return True
        return False

    # ── Contract ──────────────────────────────────────────────────────

    async def calculate_route(
        self,
        origin: Coordinates,
        destination: Coordinates,
        options: Optional[RouteOptions] = None,
    ) -> Route:
        return await self._run(
            "calculate_route", lambda a: a.calculate_route(origin, destination, options)
        )

    async def calculate_alternative_routes(
        self, origin: Coordinates, destination: Coordinates, count: int = 3
    ) -> list[Route]:
        return await self._run(
            "calculate_alternative_routes",
            lambda a: a.calculate_alternative_routes(origin, destination, count),
        )

    async def geocode(self, address: str) -> list[Address]:
        return await self._run("geocode", lambda a: a.geocode(address))

    async def reverse_geocode(self, coords: Coordinates) -> Address:
        return await self._run("reverse_geocode", lambda a: a.reverse_geocode(coords))

    async def get_traffic_data(self, route: Route) -> TrafficData:
        return await self._run("get_traffic_data", lambda a: a.get_traffic_data(route))

    # ── Chain ─────────────────────────────────────────────────────────

    async def _run(
        self, operation: str, call: Callable[[BaseMapAdapter], Awaitable[T]]
    ) -> T:
        errors: dict[str, ProviderError] = {}

        for adapter in self.adapters:
            name = adapter.get_provider_name()

            if self.quota.is_exhausted(name):
                errors[name] = QuotaExceededError(name)
                logger.info("provider_skipped", provider=name, operation=operation, reason="quota_exhausted")
                continue
            if not adapter.is_available():
                errors[name] = ProviderError.unavailable(name, "not configured")
                logger.info("provider_skipped", provider=name, operation=operation, reason="unavailable")
                continue

            try:
                result = await call(adapter)
            except ValidationError:
                raise
            except ProviderError as e:
                errors[name] = e
                logger.warning(
                    "provider_failed_trying_next",
                    provider=name,
                    operation=operation,
                    code=str(e.code),
                    error=e.message,
                )
                continue

            if errors:
                logger.info(
                    "fallback_provider_used",
                    provider=name,
                    operation=operation,
                    failed_providers=list(errors),
                )
            self._last_provider = name
            return result

        logger.error(
            "all_providers_exhausted",
            operation=operation,
            providers={name: str(err.code) for name, err in errors.items()},
        )
        raise ServiceUnavailableError(operation, errors)
