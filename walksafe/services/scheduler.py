"""
Maintenance Scheduler: runs in its own process (walksafe-scheduler).

Jobs:
1. Traffic cache sweep (hourly): drop expired entries
2. Traffic cache forced sweep (03:00): also drop nearly-expired entries
3. Risk recalculation (02:00): every region, in id-ordered batches
4. Occurrence expiry (01:00): expire or extend collaborative reports
5. Location anonymization (04:00): strip user links, rebuild cohorts

Every job logs and swallows its own failure so the loop keeps running.
"""

import asyncio
from typing import Any, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.jobs.anonymize import AnonymizeLocationData
from walksafe.jobs.expire_occurrences import ExpireOldOccurrences
from walksafe.jobs.recalculate_risk import RecalculateRiskIndex
from walksafe.services.risk_service import RiskService
from walksafe.services.traffic_cache import TrafficCacheManager

logger = structlog.get_logger(__name__)


class MaintenanceScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TrafficCacheManager,
        risk_service: Optional[RiskService] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.risk_service = risk_service or RiskService(session_factory)
        self.scheduler = scheduler or AsyncIOScheduler()

    def register_jobs(self) -> None:
        jobs = [
            (self.cleanup_cache, IntervalTrigger(hours=1), "traffic_cache_cleanup"),
            (self.force_cleanup_cache, CronTrigger(hour=3, minute=0), "traffic_cache_force_cleanup"),
            (self.recalculate_all_risk, CronTrigger(hour=2, minute=0), "risk_recalculation"),
            (self.expire_occurrences, CronTrigger(hour=1, minute=0), "occurrence_expiry"),
            (self.anonymize_location_data, CronTrigger(hour=4, minute=0), "location_anonymization"),
        ]
        for func, trigger, job_id in jobs:
            self.scheduler.add_job(
                func,
                trigger,
                id=job_id,
                max_instances=1,
                replace_existing=True,
            )

    def start(self) -> None:
        """Register and start all scheduled jobs."""
        self.register_jobs()
        self.scheduler.start()
        logger.info("maintenance_scheduler_started", jobs=[j.id for j in self.scheduler.get_jobs()])

    async def stop(self) -> None:
        self.scheduler.shutdown(wait=True)
        # AsyncIOScheduler applies the shutdown on the next loop iteration
        await asyncio.sleep(0)
        logger.info("maintenance_scheduler_stopped")

    # ── Jobs ──────────────────────────────────────────────────────────

    async def cleanup_cache(self) -> Optional[int]:
        try:
            removed = await self.cache.cleanup_expired_cache()
            logger.info("scheduled_cache_cleanup_done", removed=removed)
            return removed
        except Exception as e:
            logger.error("scheduled_cache_cleanup_failed", error=str(e))
            return None

    async def force_cleanup_cache(self) -> Optional[int]:
        try:
            removed = await self.cache.cleanup_expired_cache(force=True)
            logger.info("scheduled_cache_force_cleanup_done", removed=removed)
            return removed
        except Exception as e:
            logger.error("scheduled_cache_force_cleanup_failed", error=str(e))
            return None

    async def recalculate_all_risk(self) -> Optional[dict[str, Any]]:
        try:
            return await RecalculateRiskIndex(self.risk_service).run()
        except Exception as e:
            logger.error("scheduled_risk_recalculation_failed", error=str(e))
            return None

    async def recalculate_region(self, region_id: int) -> Optional[dict[str, Any]]:
        """On-demand trigger (e.g. after a new occurrence in region_id)."""
        try:
            return await RecalculateRiskIndex(self.risk_service, region_id=region_id).run()
        except Exception as e:
            logger.error("region_risk_trigger_failed", region_id=region_id, error=str(e))
            return None

    async def expire_occurrences(self) -> Optional[dict[str, int]]:
        try:
            return await ExpireOldOccurrences(self.session_factory).run()
        except Exception as e:
            logger.error("scheduled_occurrence_expiry_failed", error=str(e))
            return None

    async def anonymize_location_data(self) -> Optional[dict[str, Any]]:
        try:
            return await AnonymizeLocationData(self.session_factory).run()
        except Exception as e:
            logger.error("scheduled_anonymization_failed", error=str(e))
            return None
