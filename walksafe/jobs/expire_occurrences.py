"""
ExpireOldOccurrences job (daily).

Collaborative reports carry expires_at. When it passes:
- official or high-confidence (>= PRESERVE_CONFIDENCE_THRESHOLD): extend by
  COLLABORATIVE_EXPIRY_DAYS
- otherwise: mark EXPIRED (they stop counting towards risk)
"""

from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.config import settings
from walksafe.db import queries
from walksafe.timeutils import Clock, utcnow

logger = structlog.get_logger(__name__)


class ExpireOldOccurrences:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        batch_size: int = 500,
        extension_days: Optional[int] = None,
        preserve_confidence: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size
        self.extension = timedelta(days=extension_days or settings.collaborative_expiry_days)
        self.preserve_confidence = preserve_confidence or settings.preserve_confidence_threshold

    async def run(self) -> dict[str, int]:
        now = self.clock()
        expired = preserved = 0

        async with self.session_factory() as session:
            while True:
                due = await queries.get_due_occurrences(session, now, self.batch_size)
                if not due:
                    break
                for occurrence in due:
                    if occurrence.is_official() or occurrence.confidence_score >= self.preserve_confidence:
                        occurrence.expires_at = now + self.extension
                        occurrence.updated_at = now
                        preserved += 1
                    else:
                        occurrence.mark_as_expired(now)
                        expired += 1
                await session.commit()

        logger.info("occurrences_expired", expired=expired, preserved=preserved)
        return {"expired": expired, "preserved": preserved}
