"""
Durable processed markers attached to orders, one per processing pipeline.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, OrderMarker, dialect_insert, utcnow

logger = logging.getLogger(__name__)

# Pair counters (the collector's marker)
PAIRS_MARKER = "fbt_pairs"
# Product order-count counters
STATS_MARKER = "fbt_stats"


class OrderMarkerStore:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def claim(self, session: AsyncSession, order_id: int, marker: str) -> bool:
        """
        Insert the marker unless it already exists. True only for the caller that
        inserted it; runs inside the caller's transaction so it commits together
        with the counter increments it guards.
        """
        stmt = (
            dialect_insert(session, OrderMarker)
            .values(order_id=int(order_id), marker=marker, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["order_id", "marker"])
        )
        result = await session.execute(stmt)
        return bool(result.rowcount)

    async def is_marked(self, order_id: int, marker: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                select(OrderMarker.order_id).where(
                    OrderMarker.order_id == int(order_id),
                    OrderMarker.marker == marker,
                )
            )
            return result.scalar() is not None

    async def clear(self, marker: str) -> int:
        """Drop every marker of one pipeline. Only an explicit rebuild does this."""
        async with self.get_session() as session:
            result = await session.execute(delete(OrderMarker).where(OrderMarker.marker == marker))
            await session.commit()
            cleared = int(result.rowcount or 0)
        logger.warning("Processed markers cleared | marker=%s rows=%d", marker, cleared)
        return cleared
