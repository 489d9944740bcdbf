"""
Map Adapter Factory.

Builds provider adapters that share one HTTP client, one QuotaManager,
one RetryExecutor and one TrafficCacheManager, and composes them into a
fallback chain. Construct once per process; call aclose() at shutdown.
"""

from datetime import timedelta
from typing import Any, Optional

import httpx
import structlog

from walksafe.config import settings
from walksafe.exceptions import ValidationError
from walksafe.providers.base import BaseMapAdapter
from walksafe.providers.fallback import FallbackMapAdapter
from walksafe.providers.google import GoogleMapsAdapter
from walksafe.providers.here import HereMapsAdapter
from walksafe.providers.mapbox import MapboxAdapter
from walksafe.providers.nominatim import NominatimAdapter
from walksafe.providers.quota import QuotaManager
from walksafe.providers.retry import RetryExecutor, RetryPolicy
from walksafe.services.traffic_cache import TrafficCacheManager

logger = structlog.get_logger(__name__)

ADAPTERS: dict[str, type[BaseMapAdapter]] = {
    "google": GoogleMapsAdapter,
    "here": HereMapsAdapter,
    "mapbox": MapboxAdapter,
    "nominatim": NominatimAdapter,
}


def default_quota_manager() -> QuotaManager:
    return QuotaManager(
        limits=settings.quota_limits,
        window=timedelta(seconds=settings.quota_window_seconds),
        cost_alert_thresholds=settings.cost_alert_thresholds,
    )


def default_retry_executor() -> RetryExecutor:
    return RetryExecutor(
        RetryPolicy(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )
    )


class MapAdapterFactory:
    def __init__(
        self,
        quota: Optional[QuotaManager] = None,
        retry: Optional[RetryExecutor] = None,
        cache: Optional[TrafficCacheManager] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_keys: Optional[dict[str, str]] = None,
    ):
        self.quota = quota or default_quota_manager()
        self.retry = retry or default_retry_executor()
        self.cache = cache if cache is not None else TrafficCacheManager()
        self._owns_cache = cache is None
        self._client = client
        self._owns_client = client is None
        self._api_keys = api_keys if api_keys is not None else {
            "google": settings.google_maps_api_key,
            "here": settings.here_maps_api_key,
            "mapbox": settings.mapbox_api_key,
        }
        self._adapters: dict[str, BaseMapAdapter] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        return self._client

    @staticmethod
    def get_supported_providers() -> list[str]:
        return list(ADAPTERS)

    def create_adapter(self, provider: str) -> BaseMapAdapter:
        """Adapter for provider (one shared instance per name)."""
        name = provider.strip().lower()
        if name not in ADAPTERS:
            raise ValidationError(
                f"Unsupported map provider '{provider}'. Supported: {', '.join(ADAPTERS)}",
                field="provider",
            )
        if name not in self._adapters:
            self._adapters[name] = ADAPTERS[name](
                self.client,
                self.quota,
                retry=self.retry,
                cache=self.cache,
                api_key=self._api_keys.get(name, ""),
            )
            logger.debug("map_adapter_created", provider=name)
        return self._adapters[name]

    def get_configured_adapter(self) -> BaseMapAdapter:
        return self.create_adapter(settings.map_provider)

    def get_fallback_order(self) -> list[str]:
        """Primary provider first, then MAP_FALLBACK_ORDER; unknown names dropped."""
        order: list[str] = []
        for name in [settings.map_provider, *settings.map_fallback_order]:
            name = name.strip().lower()
            if name in ADAPTERS and name not in order:
                order.append(name)
            elif name not in ADAPTERS:
                logger.warning("unknown_provider_in_fallback_order", provider=name)
        return order

    def get_adapter_with_fallback(self, order: Optional[list[str]] = None) -> FallbackMapAdapter:
        names = order or self.get_fallback_order()
        return FallbackMapAdapter([self.create_adapter(n) for n in names], self.quota)

    async def check_availability(self) -> dict[str, dict[str, Any]]:
        """Configured/available flags, a network health probe and quota usage per provider."""
        report: dict[str, dict[str, Any]] = {}
        for name in ADAPTERS:
            adapter = self.create_adapter(name)
            report[name] = {
                "configured": adapter.is_configured(),
                "available": adapter.is_available(),
                "healthy": await adapter.health_check(),
                "usage_percentage": round(self.quota.get_usage_percentage(name), 2),
            }
        return report

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        if self._owns_cache:
            await self.cache.close()
        self._client = None
        self._adapters.clear()
