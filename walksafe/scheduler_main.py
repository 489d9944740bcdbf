"""
Scheduler Entry Point: runs in a separate process.

Usage:
    python -m walksafe.scheduler_main
    walksafe-scheduler

No web server here: only the APScheduler loop for cache sweeps, risk
recalculation, occurrence expiry and anonymization.
"""

import asyncio
import signal

import structlog

from walksafe.config import settings
from walksafe.db.engine import close_db, get_session_factory, init_db
from walksafe.logging_config import configure_logging
from walksafe.services.scheduler import MaintenanceScheduler
from walksafe.services.traffic_cache import TrafficCacheManager

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler until SIGINT/SIGTERM."""
    logger.info("scheduler_starting", version=settings.app_version, environment=settings.environment)

    await init_db()
    cache = TrafficCacheManager()
    scheduler = MaintenanceScheduler(session_factory=get_session_factory(), cache=cache)
    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")
    await stop_event.wait()

    await scheduler.stop()
    await cache.close()
    await close_db()
    logger.info("scheduler_shutdown_complete")


def run():
    configure_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
