"""
Relationship store: directed product-pair co-purchase counters.

Each unordered pair {A, B} lives as two rows, (A, B) and (B, A), written in
the same statement so their counts never diverge. All increments go through
an INSERT ... ON CONFLICT DO UPDATE so concurrent writers never lose an update.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import select, delete, func, and_, or_
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, FBTRelationship, dialect_insert, utcnow

logger = logging.getLogger(__name__)

Pair = Tuple[int, int]

# Rows per INSERT statement; keeps bind parameter counts well under driver limits.
UPSERT_CHUNK_SIZE = 400


class RelationshipStore:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def increment_pairs(self, session: AsyncSession, pair_counts: Mapping[Pair, int]) -> int:
        """
        Atomically add pair_counts[(a, b)] to both (a, b) and (b, a).
        Keys must be unordered pairs with a != b; the caller owns the transaction.
        Returns the number of directed rows written.
        """
        if not pair_counts:
            return 0

        now = utcnow()
        rows = []
        for (a, b), amount in pair_counts.items():
            if a == b or amount <= 0:
                continue
            rows.append({"product_id": a, "related_product_id": b, "co_purchase_count": amount, "updated_at": now})
            rows.append({"product_id": b, "related_product_id": a, "co_purchase_count": amount, "updated_at": now})

        table = FBTRelationship.__table__
        for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
            chunk = rows[start:start + UPSERT_CHUNK_SIZE]
            stmt = dialect_insert(session, FBTRelationship).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.product_id, table.c.related_product_id],
                set_={
                    "co_purchase_count": table.c.co_purchase_count + stmt.excluded.co_purchase_count,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
        return len(rows)

    async def top_related(self, product_id: int, limit: int, min_count: int = 1) -> List[Tuple[int, int]]:
        """(related_product_id, count) for product_id with count >= min_count, strongest first."""
        query = (
            select(FBTRelationship.related_product_id, FBTRelationship.co_purchase_count)
            .where(FBTRelationship.product_id == product_id)
            .where(FBTRelationship.co_purchase_count >= int(min_count))
            .order_by(
                FBTRelationship.co_purchase_count.desc(),
                FBTRelationship.related_product_id.asc(),
            )
            .limit(int(limit))
        )
        async with self.get_session() as session:
            result = await session.execute(query)
            return [(int(row.related_product_id), int(row.co_purchase_count)) for row in result.all()]

    async def related_ids(self, product_id: int) -> List[int]:
        async with self.get_session() as session:
            result = await session.execute(
                select(FBTRelationship.related_product_id).where(FBTRelationship.product_id == product_id)
            )
            return [int(pid) for pid in result.scalars().all()]

    async def get_count(self, product_id: int, related_product_id: int) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                select(FBTRelationship.co_purchase_count).where(
                    FBTRelationship.product_id == product_id,
                    FBTRelationship.related_product_id == related_product_id,
                )
            )
            return int(result.scalar() or 0)

    async def count_rows(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(func.count()).select_from(FBTRelationship))
            return int(result.scalar() or 0)

    async def distinct_product_ids_page(self, after_id: int, limit: int) -> List[int]:
        """
        One page of distinct product ids referenced by the store. Both directions
        are stored, so the product_id column alone covers every referenced product.
        """
        query = (
            select(FBTRelationship.product_id)
            .where(FBTRelationship.product_id > after_id)
            .group_by(FBTRelationship.product_id)
            .order_by(FBTRelationship.product_id.asc())
            .limit(int(limit))
        )
        async with self.get_session() as session:
            result = await session.execute(query)
            return [int(pid) for pid in result.scalars().all()]

    async def delete_for_products(self, session: AsyncSession, product_ids: Iterable[int]) -> int:
        ids = sorted({int(pid) for pid in product_ids})
        if not ids:
            return 0
        result = await session.execute(
            delete(FBTRelationship).where(
                or_(
                    FBTRelationship.product_id.in_(ids),
                    FBTRelationship.related_product_id.in_(ids),
                )
            )
        )
        return int(result.rowcount or 0)

    async def _delete_in_batches(self, condition, batch_size: int) -> int:
        """DELETE ... WHERE id IN (SELECT id ... LIMIT n), repeated until nothing matches."""
        deleted = 0
        while True:
            ids = select(FBTRelationship.id).where(condition).limit(int(batch_size))
            async with self.get_session() as session:
                result = await session.execute(
                    delete(FBTRelationship).where(FBTRelationship.id.in_(ids))
                )
                await session.commit()
            removed = int(result.rowcount or 0)
            deleted += removed
            if removed < batch_size:
                return deleted

    async def delete_below_count(self, min_count: int, batch_size: int) -> int:
        return await self._delete_in_batches(FBTRelationship.co_purchase_count < int(min_count), batch_size)

    async def delete_updated_before(self, cutoff: datetime, batch_size: int) -> int:
        return await self._delete_in_batches(FBTRelationship.updated_at < cutoff, batch_size)

    async def count_asymmetric(self) -> int:
        """Rows whose reverse direction is missing or carries a different count."""
        reverse = aliased(FBTRelationship)
        query = (
            select(func.count())
            .select_from(FBTRelationship)
            .outerjoin(
                reverse,
                and_(
                    reverse.product_id == FBTRelationship.related_product_id,
                    reverse.related_product_id == FBTRelationship.product_id,
                ),
            )
            .where(
                or_(
                    reverse.id.is_(None),
                    reverse.co_purchase_count != FBTRelationship.co_purchase_count,
                )
            )
        )
        async with self.get_session() as session:
            result = await session.execute(query)
            return int(result.scalar() or 0)

    async def clear(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(FBTRelationship))
            await session.commit()
            deleted = int(result.rowcount or 0)
        logger.info("Relationship store cleared | rows=%d", deleted)
        return deleted
