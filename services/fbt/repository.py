"""
FBT Repository
Turns raw co-purchase counters into a ranked, filtered recommendation list.

Threshold semantics: a candidate X is recommended for anchor P only when

    count(P, X) >= ceil(threshold_percent / 100 * order_count(P))

where order_count(P) is read from the product-stat store (the authoritative
count of completed orders containing P). An anchor with no recorded orders
yields no recommendations.
"""
from __future__ import annotations

import logging
import math
import warnings
from decimal import Decimal
from typing import Iterable, List, Optional

from settings import FBTSettings, OVERFETCH_FACTOR
from services.storage import StorageService, storage
from services.fbt.cache import FBTCacheManager
from services.fbt.errors import DataIntegrityWarning
from services.fbt.product_stats_store import ProductStatsStore
from services.fbt.relationship_store import RelationshipStore

logger = logging.getLogger(__name__)


def min_pair_count(threshold_percent: float, order_count: int) -> int:
    """Smallest co-purchase count that meets the threshold for an anchor with order_count orders."""
    if order_count <= 0:
        return 0
    required = Decimal(str(threshold_percent)) * Decimal(int(order_count)) / Decimal(100)
    return max(1, math.ceil(required))


class FBTRepository:
    def __init__(
        self,
        relationships: Optional[RelationshipStore] = None,
        stats: Optional[ProductStatsStore] = None,
        host: Optional[StorageService] = None,
        cache: Optional[FBTCacheManager] = None,
        settings: Optional[FBTSettings] = None,
        overfetch_factor: int = OVERFETCH_FACTOR,
    ):
        self.relationships = relationships or RelationshipStore()
        self.stats = stats or ProductStatsStore()
        self.host = host or storage
        self.cache = cache or FBTCacheManager()
        self.settings = settings or FBTSettings.from_env()
        self.overfetch_factor = max(1, int(overfetch_factor))

    async def order_count(self, product_id: int, generation: Optional[str] = None) -> int:
        """Orders containing product_id, through the long-lived aggregate cache."""
        if generation is None:
            generation = await self.cache.generation(product_id)
        cached = await self.cache.get_order_count(product_id, generation)
        if cached is not None:
            return cached
        count = await self.stats.get_order_count(product_id)
        await self.cache.set_order_count(product_id, generation, count)
        return count

    async def threshold_candidates(
        self,
        product_id: int,
        fetch_limit: int,
        threshold_percent: float,
        generation: Optional[str] = None,
    ) -> List[int]:
        order_count = await self.order_count(product_id, generation)
        if order_count <= 0:
            if await self.relationships.top_related(product_id, 1):
                message = f"product {product_id} has co-purchase pairs but no recorded orders"
                warnings.warn(message, DataIntegrityWarning, stacklevel=2)
                logger.warning("FBT data integrity: %s; run the stats backfill", message)
            return []

        min_count = min_pair_count(threshold_percent, order_count)
        rows = await self.relationships.top_related(product_id, fetch_limit, min_count=min_count)
        logger.debug(
            "FBT candidates | product_id=%s order_count=%d min_count=%d candidates=%d",
            product_id,
            order_count,
            min_count,
            len(rows),
        )
        return [related for related, _count in rows if related != product_id]

    async def get_recommendations(
        self,
        product_id: int,
        limit: Optional[int] = None,
        settings: Optional[FBTSettings] = None,
        cart_product_ids: Optional[Iterable[int]] = None,
    ) -> List[int]:
        """
        Ranked product ids recommended alongside product_id.

        The threshold-filtered candidate list is cached per (product, limit,
        settings fingerprint); stock and cart filters run on every call since
        they depend on live catalog and cart state. Never raises: any store
        failure yields an empty list.
        """
        settings = settings or self.settings
        limit = max(1, int(limit or settings.limit))
        product_id = int(product_id)

        try:
            fingerprint = settings.fingerprint()
            # read before the stores so a concurrent invalidation retires this key
            generation = await self.cache.generation(product_id)
            candidates = await self.cache.get_recommendations(product_id, generation, limit, fingerprint)
            if candidates is None:
                candidates = await self.threshold_candidates(
                    product_id, limit * self.overfetch_factor, settings.threshold_percent, generation
                )
                await self.cache.set_recommendations(product_id, generation, limit, fingerprint, candidates)
            if not candidates:
                return []

            available = await self.host.available_product_ids(candidates)
            in_cart = set()
            if settings.hide_if_in_cart and cart_product_ids:
                in_cart = {int(pid) for pid in cart_product_ids}

            return [
                pid for pid in candidates
                if pid in available and pid not in in_cart
            ][:limit]
        except Exception:
            logger.exception("FBT recommendations unavailable | product_id=%s", product_id)
            return []
