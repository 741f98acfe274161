"""Cache invalidation broker: maps change events to cache regions."""

import logging
from typing import Dict, Tuple

from database.cache import CLASS_AVERAGES_REGION, PROGRESS_REGION, RegionCache
from .events import ChangeEvent, Topic


logger = logging.getLogger(__name__)


# Entry changes imply future average changes, so they hit both regions.
REGIONS_BY_TABLE: Dict[str, Tuple[str, ...]] = {
    Topic.PROGRESS_ENTRIES.value: (PROGRESS_REGION, CLASS_AVERAGES_REGION),
    Topic.CLASS_AVERAGES.value: (CLASS_AVERAGES_REGION,),
}


class CacheInvalidationBroker:
    """
    Turns change events into region invalidations on an injected RegionCache.

    Invalidation is fire-and-forget: observers are told their data is stale
    but nothing is refetched here, and repeated invalidations are not
    deduplicated.
    """

    def __init__(self, cache: RegionCache):
        self.cache = cache

    @staticmethod
    def regions_for(table: str) -> Tuple[str, ...]:
        return REGIONS_BY_TABLE.get(table, ())

    async def invalidate(self, region_key: str) -> None:
        """Mark one region stale for all of its observers."""
        await self.cache.invalidate(region_key)

    async def handle_event(self, event: ChangeEvent) -> Tuple[str, ...]:
        """Invalidate every region affected by ``event``; returns those regions."""
        regions = self.regions_for(event.table)
        if not regions:
            logger.warning(f"No cache regions mapped for table {event.table}; event ignored")
            return ()

        logger.debug(
            f"{event.table} {event.operation.value} -> invalidating {', '.join(regions)}",
            extra={"class_id": event.class_id},
        )
        for region in regions:
            await self.invalidate(region)
        return regions
