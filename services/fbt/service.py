"""
FBTService: one entry point wiring the stores, collector, repository and jobs.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from settings import BackfillSettings, CleanupSettings, FBTSettings, clamp_batch_size
from services.pipeline_scheduler import PipelineScheduler, pipeline_scheduler
from services.storage import StorageService
from services.fbt.backfill import BackfillJob, StatsBackfillJob
from services.fbt.cache import FBTCacheManager, build_backend
from services.fbt.cleanup import FBTCleanup
from services.fbt.collector import FBTCollector
from services.fbt.markers import OrderMarkerStore, PAIRS_MARKER
from services.fbt.product_stats_store import ProductStatsStore
from services.fbt.relationship_store import RelationshipStore
from services.fbt.repository import FBTRepository

logger = logging.getLogger(__name__)


class FBTService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[FBTSettings] = None,
        cleanup_settings: Optional[CleanupSettings] = None,
        backfill_settings: Optional[BackfillSettings] = None,
        cache: Optional[FBTCacheManager] = None,
        scheduler: Optional[PipelineScheduler] = None,
    ):
        self.settings = settings or FBTSettings.from_env()
        self.host = StorageService(session_factory)
        self.cache = cache or FBTCacheManager(build_backend(session_factory=session_factory))
        self.relationships = RelationshipStore(session_factory)
        self.stats = ProductStatsStore(session_factory)
        self.markers = OrderMarkerStore(session_factory)
        self.scheduler = scheduler or pipeline_scheduler

        self.collector = FBTCollector(
            session_factory,
            host=self.host,
            relationships=self.relationships,
            stats=self.stats,
            markers=self.markers,
            cache=self.cache,
        )
        self.repository = FBTRepository(
            relationships=self.relationships,
            stats=self.stats,
            host=self.host,
            cache=self.cache,
            settings=self.settings,
        )
        backfill_settings = backfill_settings or BackfillSettings.from_env()
        self.backfill = BackfillJob(self.collector, self.host, session_factory, backfill_settings)
        self.stats_backfill = StatsBackfillJob(self.collector, self.host, session_factory, backfill_settings)
        self.cleanup = FBTCleanup(
            relationships=self.relationships,
            stats=self.stats,
            host=self.host,
            cache=self.cache,
            session_factory=session_factory,
            settings=cleanup_settings or CleanupSettings.from_env(),
        )

    # --------- storefront ---------
    async def recommendations_for(
        self,
        product_id: int,
        limit: Optional[int] = None,
        settings: Optional[FBTSettings] = None,
        cart_product_ids: Optional[Iterable[int]] = None,
    ):
        return await self.repository.get_recommendations(
            product_id, limit=limit, settings=settings, cart_product_ids=cart_product_ids
        )

    # --------- order hooks ---------
    async def process_completed_order(self, order_id: int) -> Dict[str, Any]:
        outcome = await self.collector.process(order_id)
        return outcome.to_dict()

    async def schedule_completed_order(self, order_id: int) -> Dict[str, Any]:
        """Defer processing to the background scheduler unless the order is already folded."""
        if await self.markers.is_marked(order_id, PAIRS_MARKER):
            return {"order_id": int(order_id), "scheduled": False, "reason": "already_processed"}

        async def _job() -> None:
            await self.collector.process(order_id)

        self.scheduler.schedule(_job)
        return {"order_id": int(order_id), "scheduled": True}

    async def process_orders_batch(self, order_ids: Iterable[int]) -> Dict[str, Any]:
        outcome = await self.collector.process_batch(order_ids)
        return outcome.to_dict()

    # --------- backfill ---------
    async def backfill_status(self) -> Dict[str, Any]:
        return await self.backfill.status()

    async def start_backfill(self, rebuild: bool = False) -> Dict[str, Any]:
        return await self.backfill.start(rebuild=rebuild)

    async def run_backfill_batch(self, batch_size: Optional[int] = None, cursor: Optional[int] = None) -> Dict[str, Any]:
        result = await self.backfill.run_batch(clamp_batch_size(batch_size, self.backfill.settings.batch_size), cursor)
        return result.to_dict()

    async def run_backfill_tick(
        self, time_budget_seconds: Optional[float] = None, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        size = clamp_batch_size(batch_size, self.backfill.settings.batch_size)
        result = await self.backfill.tick(time_budget_seconds, batch_size=size)
        return result.to_dict()

    async def stats_backfill_status(self) -> Dict[str, Any]:
        return await self.stats_backfill.status()

    async def start_stats_backfill(self, rebuild: bool = False) -> Dict[str, Any]:
        return await self.stats_backfill.start(rebuild=rebuild)

    async def run_stats_backfill_batch(self, batch_size: Optional[int] = None, cursor: Optional[int] = None) -> Dict[str, Any]:
        result = await self.stats_backfill.run_batch(
            clamp_batch_size(batch_size, self.stats_backfill.settings.batch_size), cursor
        )
        return result.to_dict()

    async def run_stats_backfill_tick(
        self, time_budget_seconds: Optional[float] = None, batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        size = clamp_batch_size(batch_size, self.stats_backfill.settings.batch_size)
        result = await self.stats_backfill.tick(time_budget_seconds, batch_size=size)
        return result.to_dict()

    # --------- maintenance ---------
    async def run_cleanup(self, settings: Optional[CleanupSettings] = None) -> Dict[str, int]:
        return await self.cleanup.run_cleanup(settings)

    async def purge_product(self, product_id: int) -> Dict[str, int]:
        return await self.cleanup.purge_product(product_id)


_service: Optional[FBTService] = None


def get_fbt_service() -> FBTService:
    """Process-wide service bound to the application engine (FastAPI dependency)."""
    global _service
    if _service is None:
        _service = FBTService()
    return _service
