"""
FBT Cleanup
Periodic pruning of the relationship store: noise-floor pairs, pairs pointing
at products that no longer exist, and pairs untouched past the retention window.
"""
from __future__ import annotations

import logging
import warnings
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, utcnow
from settings import CleanupSettings
from services.storage import StorageService, storage
from services.fbt.cache import FBTCacheManager
from services.fbt.errors import DataIntegrityWarning
from services.fbt.product_stats_store import ProductStatsStore
from services.fbt.relationship_store import RelationshipStore

logger = logging.getLogger(__name__)


class FBTCleanup:
    def __init__(
        self,
        relationships: Optional[RelationshipStore] = None,
        stats: Optional[ProductStatsStore] = None,
        host: Optional[StorageService] = None,
        cache: Optional[FBTCacheManager] = None,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[CleanupSettings] = None,
    ):
        self._session_factory = session_factory
        self.relationships = relationships or RelationshipStore(session_factory)
        self.stats = stats or ProductStatsStore(session_factory)
        self.host = host or storage
        self.cache = cache or FBTCacheManager()
        self.settings = settings or CleanupSettings.from_env()

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def delete_low_count_pairs(self, min_pair_count: int) -> int:
        """Pairs seen together fewer than min_pair_count times are noise."""
        if min_pair_count <= 1:
            return 0
        return await self.relationships.delete_below_count(min_pair_count, self.settings.batch_size)

    async def delete_orphaned_pairs(self) -> Dict[str, int]:
        """
        Walk the store one page of distinct product ids at a time, check which
        still exist in the catalog, and drop every row touching a missing one.
        """
        pairs_deleted = stats_deleted = 0
        after_id = 0
        while True:
            page = await self.relationships.distinct_product_ids_page(after_id, self.settings.orphan_page_size)
            if not page:
                break
            existing = await self.host.existing_product_ids(page)
            missing = [pid for pid in page if pid not in existing]
            if missing:
                async with self.get_session() as session:
                    pairs_deleted += await self.relationships.delete_for_products(session, missing)
                    stats_deleted += await self.stats.delete_for_products(session, missing)
                    await session.commit()
                logger.info("FBT orphan products pruned | products=%s", missing[:20])
            after_id = page[-1]
            if len(page) < self.settings.orphan_page_size:
                break
        return {"orphaned_deleted": pairs_deleted, "stats_deleted": stats_deleted}

    async def delete_stale_pairs(self, retention_days: int) -> int:
        cutoff = utcnow() - timedelta(days=int(retention_days))
        return await self.relationships.delete_updated_before(cutoff, self.settings.batch_size)

    async def run_cleanup(self, settings: Optional[CleanupSettings] = None) -> Dict[str, int]:
        settings = settings or self.settings
        result = {
            "low_count_deleted": 0,
            "orphaned_deleted": 0,
            "stale_deleted": 0,
            "stats_deleted": 0,
        }

        result["low_count_deleted"] = await self.delete_low_count_pairs(settings.min_pair_count)
        result.update(await self.delete_orphaned_pairs())
        result["stale_deleted"] = await self.delete_stale_pairs(settings.retention_days)

        asymmetric = await self.relationships.count_asymmetric()
        if asymmetric:
            message = f"{asymmetric} pair rows have no matching reverse row"
            warnings.warn(message, DataIntegrityWarning, stacklevel=2)
            logger.warning("FBT data integrity: %s; a rebuild backfill repairs this", message)

        if any(result.values()):
            await self.cache.invalidate_all()
        result["cache_expired_deleted"] = await self.cache.purge_expired()

        logger.info(
            "FBT cleanup finished | low_count=%d orphaned=%d stale=%d stats=%d cache_expired=%d",
            result["low_count_deleted"],
            result["orphaned_deleted"],
            result["stale_deleted"],
            result["stats_deleted"],
            result["cache_expired_deleted"],
        )
        return result

    async def purge_product(self, product_id: int) -> Dict[str, int]:
        """Remove every trace of a deleted product from both stores and the cache."""
        product_id = int(product_id)
        partners = await self.relationships.related_ids(product_id)
        async with self.get_session() as session:
            pairs = await self.relationships.delete_for_products(session, [product_id])
            stats = await self.stats.delete_for_products(session, [product_id])
            await session.commit()
        await self.cache.invalidate_products([product_id, *partners])
        logger.info("FBT product purged | product_id=%s pairs=%d stats=%d", product_id, pairs, stats)
        return {"product_id": product_id, "pairs_deleted": pairs, "stats_deleted": stats}
