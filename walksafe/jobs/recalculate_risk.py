"""
RecalculateRiskIndex job.

- single-region mode: on demand (e.g. right after new occurrences land)
- all-regions mode: scheduled nightly batch
"""

from typing import Any, Optional

import structlog

from walksafe.services.risk_service import RiskService

logger = structlog.get_logger(__name__)


class RecalculateRiskIndex:
    def __init__(
        self,
        risk_service: RiskService,
        region_id: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.risk_service = risk_service
        self.region_id = region_id
        self.batch_size = batch_size

    @property
    def mode(self) -> str:
        return "single" if self.region_id is not None else "all"

    async def run(self) -> dict[str, Any]:
        logger.info("recalculate_risk_job_started", mode=self.mode, region_id=self.region_id)
        if self.region_id is not None:
            result = await self.risk_service.recalculate_region_risk(self.region_id)
            return {"mode": self.mode, **result.to_dict()}

        summary = await self.risk_service.recalculate_all_regions(self.batch_size)
        return {"mode": self.mode, **summary}
