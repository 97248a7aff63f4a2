import asyncio
from datetime import timedelta

from sqlalchemy import func, select

from database import FBTCacheEntry, utcnow
from services.fbt.cache import FBTCacheManager, MemoryCacheBackend, TableCacheBackend, build_backend

from fbt_testing import fresh_database


class BrokenBackend:
    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl=None):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")

    async def delete_prefix(self, prefix):
        raise ConnectionError("cache down")

    async def purge_expired(self):
        raise ConnectionError("cache down")


def test_key_scheme():
    assert FBTCacheManager.generation_key(12) == "fbt:gen:12"
    assert FBTCacheManager.recommendation_key(12, "g1", 4, "abc") == "fbt:rec:12:g1:4:abc"
    assert FBTCacheManager.order_count_key(12, "g1") == "fbt:orders:12:g1"


def test_build_backend_falls_back_to_memory():
    assert isinstance(build_backend("memory"), MemoryCacheBackend)
    assert isinstance(build_backend("table"), TableCacheBackend)
    assert isinstance(build_backend("redis"), MemoryCacheBackend)


def test_generation_is_stable_until_invalidated():
    async def scenario():
        cache = FBTCacheManager(MemoryCacheBackend())
        first = await cache.generation(1)
        assert await cache.generation(1) == first
        await cache.set_recommendations(1, first, 4, "fp", [2, 3])

        await cache.invalidate_products([1])

        second = await cache.generation(1)
        assert second != first
        # a writer still holding the old token cannot reach new readers
        await cache.set_recommendations(1, first, 4, "fp", [2, 3])
        assert await cache.get_recommendations(1, second, 4, "fp") is None

    asyncio.run(scenario())


def test_invalidate_products_is_scoped_to_exact_products():
    async def scenario():
        cache = FBTCacheManager(MemoryCacheBackend())
        one, ten = await cache.generation(1), await cache.generation(10)
        await cache.set_recommendations(1, one, 4, "fp", [2, 3])
        await cache.set_recommendations(10, ten, 4, "fp", [11])
        await cache.set_order_count(1, one, 5)
        await cache.set_order_count(10, ten, 7)

        assert await cache.invalidate_products([1]) == 3

        assert await cache.get_recommendations(1, one, 4, "fp") is None
        assert await cache.get_order_count(1, one) is None
        assert await cache.generation(10) == ten
        assert await cache.get_recommendations(10, ten, 4, "fp") == [11]
        assert await cache.get_order_count(10, ten) == 7

        assert await cache.invalidate_all() == 3
        assert await cache.get_order_count(10, ten) is None

    asyncio.run(scenario())


def test_expired_entries_are_misses():
    async def scenario():
        cache = FBTCacheManager(MemoryCacheBackend(), recommendation_ttl=-1)
        await cache.set_recommendations(1, "g", 4, "fp", [2])
        assert await cache.get_recommendations(1, "g", 4, "fp") is None

    asyncio.run(scenario())


def test_backend_failures_are_misses():
    async def scenario():
        cache = FBTCacheManager(BrokenBackend())
        generation = await cache.generation(1)
        assert generation
        await cache.set_recommendations(1, generation, 4, "fp", [2])
        assert await cache.get_recommendations(1, generation, 4, "fp") is None
        assert await cache.get_order_count(1, generation) is None
        assert await cache.invalidate_products([1, 2]) == 0
        assert await cache.invalidate_all() == 0
        assert await cache.purge_expired() == 0

    asyncio.run(scenario())


def test_memory_backend_evicts_oldest_past_its_bound():
    async def scenario():
        backend = MemoryCacheBackend(max_entries=3)
        for key in ("a", "b", "c", "d"):
            await backend.set(key, key, ttl=60)

        assert len(backend) == 3
        assert await backend.get("a") is None
        assert await backend.get("d") == "d"

        # rewriting a present key never evicts another one
        await backend.set("b", "b2", ttl=60)
        assert len(backend) == 3
        assert await backend.get("c") == "c"

    asyncio.run(scenario())


def test_memory_backend_sweeps_expired_before_evicting():
    async def scenario():
        backend = MemoryCacheBackend(max_entries=2)
        await backend.set("old-1", "x", ttl=-1)
        await backend.set("old-2", "x", ttl=-1)
        await backend.set("live", "y", ttl=60)

        assert len(backend) == 1
        await backend.set("other", "z", ttl=60)
        assert await backend.get("live") == "y"
        assert await backend.get("other") == "z"

    asyncio.run(scenario())


def test_table_backend_round_trip_and_prefix_delete():
    async def scenario():
        async with fresh_database() as factory:
            cache = FBTCacheManager(TableCacheBackend(factory))
            one = await cache.generation(1)
            await cache.set_recommendations(1, one, 4, "fp", [2, 3])
            await cache.set_recommendations(1, one, 4, "fp", [3])
            await cache.set_order_count(1, one, 9)
            ten = await cache.generation(10)
            await cache.set_recommendations(10, ten, 4, "fp", [5])

            assert await cache.generation(1) == one
            assert await cache.get_recommendations(1, one, 4, "fp") == [3]
            assert await cache.get_order_count(1, one) == 9

            assert await cache.invalidate_products([1]) == 3
            assert await cache.get_recommendations(1, one, 4, "fp") is None
            assert await cache.get_recommendations(10, ten, 4, "fp") == [5]

    asyncio.run(scenario())


def test_table_backend_purges_expired_rows():
    async def scenario():
        async with fresh_database() as factory:
            backend = TableCacheBackend(factory)
            await backend.set("fbt:rec:1:g:4:fp", "[2]", ttl=60)
            await backend.set("fbt:rec:2:g:4:fp", "[3]", ttl=60)
            await backend.set("fbt:gen:3", '"g"', ttl=None)
            async with factory() as session:
                record = await session.get(FBTCacheEntry, "fbt:rec:2:g:4:fp")
                record.expires_at = utcnow() - timedelta(seconds=5)
                await session.commit()

            assert await FBTCacheManager(backend).purge_expired() == 1

            async with factory() as session:
                remaining = (await session.execute(select(func.count()).select_from(FBTCacheEntry))).scalar()
            assert remaining == 2

    asyncio.run(scenario())
