"""
Recommendation cache for the FBT engine.

Entries are disposable: every value can be rebuilt from the relationship and
product-stat stores, so any backend failure is logged and treated as a miss.

Key scheme
    fbt:gen:{product_id}                                       -> JSON str (generation token)
    fbt:rec:{product_id}:{gen}:{limit}:{settings_fingerprint}  -> JSON list of candidate ids
    fbt:orders:{product_id}:{gen}                              -> JSON int (orders containing product)

Readers fetch the product's generation token before touching the stores and
build their keys from it. Invalidation drops the token, so a read that was in
flight while a product changed writes under a key nobody looks up again.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, FBTCacheEntry, utcnow
from settings import (
    CACHE_BACKEND,
    MEMORY_CACHE_MAX_ENTRIES,
    ORDER_COUNT_CACHE_TTL,
    RECOMMENDATION_CACHE_TTL,
)

logger = logging.getLogger(__name__)

CACHE_NS = "fbt"


class MemoryCacheBackend:
    """Process-local TTL map holding at most max_entries keys."""

    def __init__(self, max_entries: int = MEMORY_CACHE_MAX_ENTRIES) -> None:
        self.max_entries = max(1, int(max_entries))
        # insertion order doubles as age order for eviction
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return payload

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._sweep()
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
        expires_at = time.monotonic() + int(ttl) if ttl else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> int:
        return 1 if self._entries.pop(key, None) is not None else 0

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def _sweep(self) -> int:
        now = time.monotonic()
        expired = [
            key for key, (_payload, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def purge_expired(self) -> int:
        return self._sweep()

    def __len__(self) -> int:
        return len(self._entries)


class TableCacheBackend:
    """Cache rows in fbt_cache_entries, shared by every worker on the database."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        self._session_factory = session_factory

    def get_session(self) -> AsyncSession:
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def get(self, key: str) -> Optional[str]:
        async with self.get_session() as session:
            record = await session.get(FBTCacheEntry, key)
            if not record:
                return None
            if record.expires_at and record.expires_at < utcnow():
                await session.delete(record)
                await session.commit()
                return None
            return record.payload

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = utcnow() + timedelta(seconds=int(ttl)) if ttl else None
        async with self.get_session() as session:
            record = await session.get(FBTCacheEntry, key)
            if record:
                record.payload = value
                record.expires_at = expires_at
                record.updated_at = utcnow()
            else:
                session.add(FBTCacheEntry(key=key, payload=value, expires_at=expires_at))
            await session.commit()

    async def delete(self, key: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(FBTCacheEntry).where(FBTCacheEntry.key == key))
            await session.commit()
            return int(result.rowcount or 0)

    async def delete_prefix(self, prefix: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                delete(FBTCacheEntry).where(FBTCacheEntry.key.startswith(prefix, autoescape=True))
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def purge_expired(self) -> int:
        """Rows are otherwise only dropped when their own key is read after expiry."""
        async with self.get_session() as session:
            result = await session.execute(
                delete(FBTCacheEntry).where(FBTCacheEntry.expires_at < utcnow())
            )
            await session.commit()
            return int(result.rowcount or 0)


def build_backend(name: Optional[str] = None, session_factory: Optional[async_sessionmaker] = None):
    backend = (name or CACHE_BACKEND or "memory").lower()
    if backend == "table":
        return TableCacheBackend(session_factory)
    if backend != "memory":
        logger.warning("Unknown FBT cache backend %r; using in-process memory cache", backend)
    return MemoryCacheBackend()


class FBTCacheManager:
    def __init__(
        self,
        backend=None,
        recommendation_ttl: int = RECOMMENDATION_CACHE_TTL,
        order_count_ttl: int = ORDER_COUNT_CACHE_TTL,
    ) -> None:
        self.backend = backend if backend is not None else build_backend()
        self.recommendation_ttl = recommendation_ttl
        self.order_count_ttl = order_count_ttl

    @staticmethod
    def generation_key(product_id: int) -> str:
        return f"{CACHE_NS}:gen:{int(product_id)}"

    @staticmethod
    def product_prefix(product_id: int) -> str:
        return f"{CACHE_NS}:rec:{int(product_id)}:"

    @staticmethod
    def order_count_prefix(product_id: int) -> str:
        return f"{CACHE_NS}:orders:{int(product_id)}:"

    @classmethod
    def recommendation_key(cls, product_id: int, generation: str, limit: int, fingerprint: str) -> str:
        return f"{cls.product_prefix(product_id)}{generation}:{int(limit)}:{fingerprint}"

    @classmethod
    def order_count_key(cls, product_id: int, generation: str) -> str:
        return f"{cls.order_count_prefix(product_id)}{generation}"

    # --------- raw access (never raises) ---------
    async def _read(self, key: str) -> Optional[Any]:
        try:
            blob = await self.backend.get(key)
        except Exception as e:
            logger.warning("FBT_CACHE: read failed for key=%s: %s", key, e)
            return None
        if blob is None:
            logger.debug("FBT_CACHE: miss key=%s", key)
            return None
        try:
            value = json.loads(blob)
        except (TypeError, ValueError):
            logger.warning("FBT_CACHE: undecodable payload for key=%s", key)
            return None
        logger.debug("FBT_CACHE: hit key=%s", key)
        return value

    async def _write(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.backend.set(key, json.dumps(value), ttl=ttl)
        except Exception as e:
            logger.warning("FBT_CACHE: write failed for key=%s: %s", key, e)

    # --------- per-product generation ---------
    async def generation(self, product_id: int) -> str:
        """
        Current generation token of a product, minting a fresh one when none is
        stored. A fresh token never matches an older entry, so an evicted or
        expired token can only cause misses.
        """
        value = await self._read(self.generation_key(product_id))
        if isinstance(value, str) and value:
            return value
        token = uuid.uuid4().hex[:16]
        await self._write(
            self.generation_key(product_id),
            token,
            max(self.recommendation_ttl, self.order_count_ttl),
        )
        return token

    # --------- recommendation candidates ---------
    async def get_recommendations(
        self, product_id: int, generation: str, limit: int, fingerprint: str
    ) -> Optional[List[int]]:
        value = await self._read(self.recommendation_key(product_id, generation, limit, fingerprint))
        if not isinstance(value, list):
            return None
        return [int(pid) for pid in value]

    async def set_recommendations(
        self, product_id: int, generation: str, limit: int, fingerprint: str, product_ids: List[int]
    ) -> None:
        await self._write(
            self.recommendation_key(product_id, generation, limit, fingerprint),
            [int(pid) for pid in product_ids],
            self.recommendation_ttl,
        )

    # --------- coarse per-product order count ---------
    async def get_order_count(self, product_id: int, generation: str) -> Optional[int]:
        value = await self._read(self.order_count_key(product_id, generation))
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    async def set_order_count(self, product_id: int, generation: str, count: int) -> None:
        await self._write(self.order_count_key(product_id, generation), int(count), self.order_count_ttl)

    # --------- invalidation ---------
    async def invalidate_products(self, product_ids: Iterable[int]) -> int:
        """Retire the generation of each product and drop every entry scoped to it."""
        removed = 0
        for pid in sorted({int(p) for p in product_ids}):
            try:
                removed += await self.backend.delete(self.generation_key(pid))
                removed += await self.backend.delete_prefix(self.product_prefix(pid))
                removed += await self.backend.delete_prefix(self.order_count_prefix(pid))
            except Exception as e:
                logger.warning("FBT_CACHE: invalidation failed for product=%s: %s", pid, e)
        return removed

    async def invalidate_all(self) -> int:
        try:
            removed = await self.backend.delete_prefix(f"{CACHE_NS}:")
        except Exception as e:
            logger.warning("FBT_CACHE: namespace invalidation failed: %s", e)
            return 0
        logger.info("FBT_CACHE: namespace invalidated | entries=%d", removed)
        return removed

    async def purge_expired(self) -> int:
        try:
            removed = await self.backend.purge_expired()
        except Exception as e:
            logger.warning("FBT_CACHE: expired entry purge failed: %s", e)
            return 0
        if removed:
            logger.info("FBT_CACHE: expired entries purged | entries=%d", removed)
        return removed
