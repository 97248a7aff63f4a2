"""
Per-product completed-order counters. These are the threshold denominators.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, FBTProductStat, dialect_insert, utcnow

logger = logging.getLogger(__name__)


class ProductStatsStore:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def increment(self, session: AsyncSession, counts: Mapping[int, int]) -> int:
        """Atomically add counts[product_id] to each product's order_count (upsert)."""
        rows = [
            {"product_id": int(pid), "order_count": int(amount), "updated_at": utcnow()}
            for pid, amount in counts.items()
            if amount > 0
        ]
        if not rows:
            return 0

        table = FBTProductStat.__table__
        stmt = dialect_insert(session, FBTProductStat).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.product_id],
            set_={
                "order_count": table.c.order_count + stmt.excluded.order_count,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)
        return len(rows)

    async def get_order_count(self, product_id: int) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(FBTProductStat.order_count).where(FBTProductStat.product_id == product_id)
            )
            return int(result.scalar() or 0)

    async def get_order_counts(self, product_ids: Iterable[int]) -> Dict[int, int]:
        ids = sorted({int(pid) for pid in product_ids})
        if not ids:
            return {}
        async with self.get_session() as session:
            result = await session.execute(
                select(FBTProductStat.product_id, FBTProductStat.order_count)
                .where(FBTProductStat.product_id.in_(ids))
            )
            return {int(row.product_id): int(row.order_count) for row in result.all()}

    async def delete_for_products(self, session: AsyncSession, product_ids: Iterable[int]) -> int:
        ids = sorted({int(pid) for pid in product_ids})
        if not ids:
            return 0
        result = await session.execute(
            delete(FBTProductStat).where(FBTProductStat.product_id.in_(ids))
        )
        return int(result.rowcount or 0)

    async def clear(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(FBTProductStat))
            await session.commit()
            deleted = int(result.rowcount or 0)
        logger.info("Product stats cleared | rows=%d", deleted)
        return deleted
