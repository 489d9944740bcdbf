"""
Provider Quota Manager.

Tracks per-provider call budgets inside fixed windows that roll over:
- window counter (default 30 days) against a configured limit
- daily counter (informational)
- accumulated cost, with a warning when the cost threshold is crossed

Throttling: at >= 80% of the window budget only half of the calls are
admitted; at 100% nothing is admitted until the window rolls over.

Shared process-wide; every read-modify-write happens under one lock.
"""

import random
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from walksafe.timeutils import Clock, utcnow

logger = structlog.get_logger(__name__)

THROTTLE_THRESHOLD_PCT = 80.0
THROTTLE_ADMIT_RATIO = 0.5
DEFAULT_LIMIT = 100_000


@dataclass
class ProviderQuota:
    provider_name: str
    window_start: datetime
    call_count: int
    limit: int
    cost: float = 0.0
    day_start: Optional[datetime] = None
    daily_count: int = 0

    @property
    def usage_percentage(self) -> float:
        if self.limit <= 0:
            return 100.0
        return min(100.0, self.call_count / self.limit * 100)

    @property
    def is_exhausted(self) -> bool:
        return self.call_count >= self.limit


class QuotaManager:
    """Per-provider call budgets. Construct once per process and inject."""

    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        window: timedelta = timedelta(days=30),
        cost_alert_thresholds: Optional[dict[str, float]] = None,
        clock: Clock = utcnow,
        rng: Callable[[], float] = random.random,
    ):
        self._limits = dict(limits or {})
        self._window = window
        self._cost_thresholds = dict(cost_alert_thresholds or {})
        self._clock = clock
        self._rng = rng
        self._quotas: dict[str, ProviderQuota] = {}
        self._lock = threading.Lock()

    # ── Internal ──────────────────────────────────────────────────────

    def _current(self, provider: str) -> ProviderQuota:
        """Current window for provider, rolled over if expired. Caller holds the lock."""
        now = self._clock()
        limit = self._limits.get(provider, DEFAULT_LIMIT)
        quota = self._quotas.get(provider)
        if quota is None:
            quota = ProviderQuota(provider, now, 0, limit, day_start=_day(now))
            self._quotas[provider] = quota
        if now >= quota.window_start + self._window:
            logger.info(
                "quota_window_rolled_over",
                provider=provider,
                previous_calls=quota.call_count,
                previous_cost=round(quota.cost, 4),
            )
            quota.window_start = now
            quota.call_count = 0
            quota.cost = 0.0
        if quota.day_start is None or _day(now) != quota.day_start:
            quota.day_start = _day(now)
            quota.daily_count = 0
        quota.limit = limit
        return quota

    # ── Recording ─────────────────────────────────────────────────────

    def record_call(self, provider: str, operation: str, cost: float = 0.0) -> ProviderQuota:
        """Count one outbound call (and its cost) against the provider's window."""
        with self._lock:
            quota = self._current(provider)
            quota.call_count += 1
            quota.daily_count += 1
            if cost > 0:
                quota.cost += cost
            snapshot = ProviderQuota(**asdict(quota))

        logger.debug(
            "provider_call_recorded",
            provider=provider,
            operation=operation,
            window_count=snapshot.call_count,
            daily_count=snapshot.daily_count,
            cost=cost,
        )
        self._check_alerts(snapshot)
        return snapshot

    def _check_alerts(self, quota: ProviderQuota) -> None:
        if quota.usage_percentage >= THROTTLE_THRESHOLD_PCT:
            logger.warning(
                "provider_quota_threshold_reached",
                provider=quota.provider_name,
                usage_percentage=round(quota.usage_percentage, 2),
                threshold=THROTTLE_THRESHOLD_PCT,
            )
        threshold = self._cost_thresholds.get(quota.provider_name)
        if threshold is not None and quota.cost >= threshold:
            logger.warning(
                "provider_cost_threshold_exceeded",
                provider=quota.provider_name,
                cost=round(quota.cost, 4),
                threshold=threshold,
            )

    # ── Admission ─────────────────────────────────────────────────────

    def is_exhausted(self, provider: str) -> bool:
        with self._lock:
            return self._current(provider).is_exhausted

    def should_throttle(self, provider: str) -> bool:
        return self.get_usage_percentage(provider) >= THROTTLE_THRESHOLD_PCT

    def should_allow_call(self, provider: str) -> bool:
        """False when exhausted; a coin flip when throttling; True otherwise."""
        with self._lock:
            quota = self._current(provider)
            if quota.is_exhausted:
                return False
            if quota.usage_percentage < THROTTLE_THRESHOLD_PCT:
                return True
        return self._rng() < THROTTLE_ADMIT_RATIO

    # ── Reporting ─────────────────────────────────────────────────────

    def get_quota(self, provider: str) -> ProviderQuota:
        with self._lock:
            return ProviderQuota(**asdict(self._current(provider)))

    def get_usage_percentage(self, provider: str) -> float:
        with self._lock:
            return self._current(provider).usage_percentage

    def get_statistics(self) -> dict[str, dict]:
        providers = sorted(set(self._limits) | set(self._quotas))
        stats = {}
        for provider in providers:
            quota = self.get_quota(provider)
            stats[provider] = {
                "window_usage": quota.call_count,
                "window_limit": quota.limit,
                "window_start": quota.window_start.isoformat(),
                "usage_percentage": round(quota.usage_percentage, 2),
                "daily_usage": quota.daily_count,
                "cost": round(quota.cost, 4),
                "cost_threshold": self._cost_thresholds.get(provider),
                "is_throttled": quota.usage_percentage >= THROTTLE_THRESHOLD_PCT,
                "is_exhausted": quota.is_exhausted,
            }
        return stats

    # ── Admin ─────────────────────────────────────────────────────────

    def set_quota_limit(self, provider: str, limit: int) -> None:
        with self._lock:
            self._limits[provider] = limit

    def set_cost_alert_threshold(self, provider: str, threshold: float) -> None:
        with self._lock:
            self._cost_thresholds[provider] = threshold

    def reset(self, provider: Optional[str] = None) -> None:
        with self._lock:
            if provider is None:
                self._quotas.clear()
            else:
                self._quotas.pop(provider, None)


def _day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)
