"""
Database-backed region lookup.

Bounding-box prefilter in SQL (indexed columns), then an exact ray-casting
test against each candidate's stored ring. Lowest region id wins on overlap.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walksafe.db import queries
from walksafe.db.models import Region
from walksafe.geo import Coordinates


class DatabaseRegionLookup:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_region(self, point: Coordinates) -> Optional[Region]:
        async with self.session_factory() as session:
            return await find_region_in_session(session, point)


async def find_region_in_session(session: AsyncSession, point: Coordinates) -> Optional[Region]:
    for region in await queries.get_regions_covering(session, point):
        if region.contains(point):
            return region
    return None
