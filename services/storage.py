"""
Storage Service Layer
Read/write access to the host order and catalog tables used by the FBT engine
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, delete, func, update, exists, and_
from typing import List, Optional, Dict, Any, Iterable, Set
from types import SimpleNamespace
import logging

from database import (
    AsyncSessionLocal, Order, OrderLine, Product, OrderMarker, dialect_insert
)
from settings import COMPLETED_ORDER_STATUS

logger = logging.getLogger(__name__)


class StorageService:
    """Storage service providing host order/catalog operations"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def _as_int(self, v, default=None):
        if v in (None, "", "NULL", "null"):
            return default
        try:
            return int(float(v))
        except Exception:
            return default

    def _clean_ids(self, ids: Iterable[Any]) -> List[int]:
        cleaned = {self._as_int(i) for i in ids or []}
        return sorted(i for i in cleaned if i is not None and i > 0)

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    # ---------------- Orders ----------------
    async def get_order_with_lines(self, order_id: int) -> Optional[SimpleNamespace]:
        """Load an order and its lines as a lightweight namespace (no lazy loads outside the session)."""
        async with self.get_session() as session:
            order = await session.get(Order, order_id)
            if order is None:
                return None
            result = await session.execute(
                select(OrderLine.product_id, OrderLine.variation_id)
                .where(OrderLine.order_id == order_id)
                .order_by(OrderLine.id)
            )
            lines = [
                SimpleNamespace(product_id=row.product_id, variation_id=row.variation_id)
                for row in result.all()
            ]
            return SimpleNamespace(order_id=order.id, status=order.status, lines=lines)

    def _completed_orders_query(self, unprocessed_marker: Optional[str]):
        query = select(Order.id).where(Order.status == COMPLETED_ORDER_STATUS)
        if unprocessed_marker:
            query = query.where(
                ~exists().where(
                    and_(
                        OrderMarker.order_id == Order.id,
                        OrderMarker.marker == unprocessed_marker,
                    )
                )
            )
        return query

    async def get_completed_order_ids(
        self,
        after_id: int = 0,
        limit: int = 100,
        unprocessed_marker: Optional[str] = None,
    ) -> List[int]:
        """
        Cursor page of completed order ids strictly above after_id, ascending.
        With unprocessed_marker, orders already carrying that marker are excluded.
        """
        query = (
            self._completed_orders_query(unprocessed_marker)
            .where(Order.id > int(after_id or 0))
            .order_by(Order.id.asc())
            .limit(int(limit))
        )
        async with self.get_session() as session:
            result = await session.execute(query)
            return [int(row) for row in result.scalars().all()]

    async def count_completed_orders(self, unprocessed_marker: Optional[str] = None) -> int:
        subquery = self._completed_orders_query(unprocessed_marker).subquery()
        async with self.get_session() as session:
            result = await session.execute(select(func.count()).select_from(subquery))
            return int(result.scalar() or 0)

    async def create_orders_with_lines(self, orders_data: List[Dict[str, Any]]) -> List[int]:
        """
        Insert orders with their lines. Each entry: {"id"?, "status", "created_at"?,
        "lines": [{"product_id", "variation_id"?, "quantity"?}]}. Returns the order ids.
        """
        if not orders_data:
            return []

        created: List[int] = []
        async with self.get_session() as session:
            try:
                for payload in orders_data:
                    order_kwargs = {"status": payload.get("status") or COMPLETED_ORDER_STATUS}
                    if payload.get("id") is not None:
                        order_kwargs["id"] = int(payload["id"])
                    if payload.get("created_at") is not None:
                        order_kwargs["created_at"] = payload["created_at"]
                    order = Order(**order_kwargs)
                    session.add(order)
                    await session.flush()
                    for line in payload.get("lines") or []:
                        session.add(
                            OrderLine(
                                order_id=order.id,
                                product_id=self._as_int(line.get("product_id")),
                                variation_id=self._as_int(line.get("variation_id")),
                                quantity=self._as_int(line.get("quantity"), 1) or 1,
                            )
                        )
                    created.append(order.id)
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Error in create_orders_with_lines: {e}")
                raise
        return created

    async def update_order_status(self, order_id: int, status: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                update(Order).where(Order.id == order_id).values(status=status)
            )
            await session.commit()
            return bool(result.rowcount)

    # ---------------- Catalog ----------------
    async def upsert_products(self, products_data: List[Dict[str, Any]]) -> int:
        """Bulk upsert catalog rows keyed by product_id."""
        rows = []
        for item in products_data or []:
            product_id = self._as_int(item.get("product_id"))
            if product_id is None:
                continue
            rows.append(
                {
                    "product_id": product_id,
                    "parent_id": self._as_int(item.get("parent_id")),
                    "name": item.get("name"),
                    "in_stock": bool(item.get("in_stock", True)),
                    "purchasable": bool(item.get("purchasable", True)),
                }
            )
        if not rows:
            return 0

        async with self.get_session() as session:
            stmt = dialect_insert(session, Product).values(rows)
            upsert = stmt.on_conflict_do_update(
                index_elements=[Product.product_id],
                set_={
                    "parent_id": stmt.excluded.parent_id,
                    "name": stmt.excluded.name,
                    "in_stock": stmt.excluded.in_stock,
                    "purchasable": stmt.excluded.purchasable,
                },
            )
            await session.execute(upsert)
            await session.commit()
        return len(rows)

    async def delete_products(self, product_ids: Iterable[Any]) -> int:
        ids = self._clean_ids(product_ids)
        if not ids:
            return 0
        async with self.get_session() as session:
            result = await session.execute(delete(Product).where(Product.product_id.in_(ids)))
            await session.commit()
            return int(result.rowcount or 0)

    async def resolve_parent_ids(self, variation_ids: Iterable[Any]) -> Dict[int, int]:
        """Map variation ids to their parent product ids (unknown variations are omitted)."""
        ids = self._clean_ids(variation_ids)
        if not ids:
            return {}
        async with self.get_session() as session:
            result = await session.execute(
                select(Product.product_id, Product.parent_id)
                .where(Product.product_id.in_(ids))
                .where(Product.parent_id.is_not(None))
            )
            return {int(row.product_id): int(row.parent_id) for row in result.all()}

    async def existing_product_ids(self, product_ids: Iterable[Any]) -> Set[int]:
        ids = self._clean_ids(product_ids)
        if not ids:
            return set()
        async with self.get_session() as session:
            result = await session.execute(
                select(Product.product_id).where(Product.product_id.in_(ids))
            )
            return {int(pid) for pid in result.scalars().all()}

    async def available_product_ids(self, product_ids: Iterable[Any]) -> Set[int]:
        """Products that exist, are in stock and can be purchased."""
        ids = self._clean_ids(product_ids)
        if not ids:
            return set()
        async with self.get_session() as session:
            result = await session.execute(
                select(Product.product_id)
                .where(Product.product_id.in_(ids))
                .where(Product.in_stock.is_(True))
                .where(Product.purchasable.is_(True))
            )
            return {int(pid) for pid in result.scalars().all()}


# Global storage instance
storage = StorageService()
