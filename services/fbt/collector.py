"""
FBT Collector
Folds completed orders into the pair and product-stat counters exactly once.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from itertools import combinations
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal
from settings import COMPLETED_ORDER_STATUS
from services.storage import StorageService, storage
from services.fbt.cache import FBTCacheManager
from services.fbt.errors import PoisonRecordError, TransientStoreError
from services.fbt.markers import OrderMarkerStore, PAIRS_MARKER, STATS_MARKER
from services.fbt.product_stats_store import ProductStatsStore
from services.fbt.relationship_store import RelationshipStore

logger = logging.getLogger(__name__)

PROCESSED = "processed"
SKIPPED = "skipped"


@dataclass
class CollectOutcome:
    order_id: int
    status: str
    products: List[int] = field(default_factory=list)
    pairs: int = 0
    reason: Optional[str] = None

    @property
    def processed(self) -> bool:
        return self.status == PROCESSED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchOutcome:
    requested: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    pairs: int = 0
    failed_order_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_pairs(product_ids: Iterable[int]) -> List[Tuple[int, int]]:
    """Every unordered pair of distinct products, smaller id first."""
    distinct = sorted({int(pid) for pid in product_ids})
    return list(combinations(distinct, 2))


class FBTCollector:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        host: Optional[StorageService] = None,
        relationships: Optional[RelationshipStore] = None,
        stats: Optional[ProductStatsStore] = None,
        markers: Optional[OrderMarkerStore] = None,
        cache: Optional[FBTCacheManager] = None,
    ):
        self._session_factory = session_factory
        self.host = host or storage
        self.relationships = relationships or RelationshipStore(session_factory)
        self.stats = stats or ProductStatsStore(session_factory)
        self.markers = markers or OrderMarkerStore(session_factory)
        self.cache = cache or FBTCacheManager()

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def extract_product_ids(self, order) -> List[int]:
        """
        Distinct parent product ids of an order. A line carrying only a
        variation id resolves through the catalog; a product id that is itself
        a variation collapses to its parent too.
        """
        raw_ids: List[int] = []
        variation_only: List[int] = []
        for line in order.lines:
            if line.product_id:
                raw_ids.append(int(line.product_id))
            elif line.variation_id:
                variation_only.append(int(line.variation_id))
            else:
                raise PoisonRecordError(order.order_id, "line item without product or variation id")

        parents = await self.host.resolve_parent_ids(raw_ids + variation_only)
        for variation_id in variation_only:
            if variation_id not in parents:
                raise PoisonRecordError(order.order_id, f"variation {variation_id} has no known parent product")

        return sorted({parents.get(pid, pid) for pid in raw_ids + variation_only})

    async def process(self, order_id: int) -> CollectOutcome:
        """
        Fold one completed order into the stores.

        Raises PoisonRecordError for orders that can never be folded and
        TransientStoreError when the database is unavailable.
        """
        order_id = int(order_id)
        try:
            if await self.markers.is_marked(order_id, PAIRS_MARKER):
                return CollectOutcome(order_id, SKIPPED, reason="already_processed")

            order = await self.host.get_order_with_lines(order_id)
            if order is None:
                raise PoisonRecordError(order_id, "order not found")
            if order.status != COMPLETED_ORDER_STATUS:
                return CollectOutcome(order_id, SKIPPED, reason="not_completed")

            product_ids = await self.extract_product_ids(order)
            pairs = Counter(generate_pairs(product_ids))

            async with self.get_session() as session:
                async with session.begin():
                    if not await self.markers.claim(session, order_id, PAIRS_MARKER):
                        # Another worker folded it between the check and the claim.
                        return CollectOutcome(order_id, SKIPPED, product_ids, reason="already_processed")
                    if await self.markers.claim(session, order_id, STATS_MARKER):
                        await self.stats.increment(session, {pid: 1 for pid in product_ids})
                    await self.relationships.increment_pairs(session, pairs)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"order {order_id}: {e}") from e

        if product_ids:
            await self.cache.invalidate_products(product_ids)

        logger.info(
            "FBT order processed | order_id=%s products=%d pairs=%d",
            order_id,
            len(product_ids),
            len(pairs),
        )
        return CollectOutcome(order_id, PROCESSED, product_ids, pairs=len(pairs))

    async def process_stats(self, order_id: int) -> CollectOutcome:
        """Fold only the product order counts of one order, guarded by the stats marker."""
        order_id = int(order_id)
        try:
            order = await self.host.get_order_with_lines(order_id)
            if order is None:
                raise PoisonRecordError(order_id, "order not found")
            if order.status != COMPLETED_ORDER_STATUS:
                return CollectOutcome(order_id, SKIPPED, reason="not_completed")

            product_ids = await self.extract_product_ids(order)
            async with self.get_session() as session:
                async with session.begin():
                    if not await self.markers.claim(session, order_id, STATS_MARKER):
                        return CollectOutcome(order_id, SKIPPED, product_ids, reason="already_counted")
                    await self.stats.increment(session, {pid: 1 for pid in product_ids})
        except SQLAlchemyError as e:
            raise TransientStoreError(f"order {order_id}: {e}") from e

        if product_ids:
            await self.cache.invalidate_products(product_ids)
        return CollectOutcome(order_id, PROCESSED, product_ids)

    async def process_batch(self, order_ids: Iterable[int], stats_only: bool = False) -> BatchOutcome:
        """
        Fold several orders, one transaction each. A failing order is logged
        and tallied, never allowed to abort the rest of the batch.
        """
        handler = self.process_stats if stats_only else self.process
        ids = list(dict.fromkeys(int(oid) for oid in order_ids))
        outcome = BatchOutcome(requested=len(ids))
        for order_id in ids:
            try:
                result = await handler(order_id)
            except PoisonRecordError as e:
                logger.error("FBT poison order skipped | order_id=%s reason=%s", order_id, e.reason)
                outcome.errors += 1
                outcome.failed_order_ids.append(order_id)
                continue
            except Exception:
                logger.exception("FBT order processing failed | order_id=%s", order_id)
                outcome.errors += 1
                outcome.failed_order_ids.append(order_id)
                continue

            if result.processed:
                outcome.processed += 1
                outcome.pairs += result.pairs
            else:
                outcome.skipped += 1

        logger.info(
            "FBT batch processed | requested=%d processed=%d skipped=%d errors=%d pairs=%d",
            outcome.requested,
            outcome.processed,
            outcome.skipped,
            outcome.errors,
            outcome.pairs,
        )
        return outcome
