import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import build_engine
from settings import BackfillSettings, FBTSettings
from services.progress_tracker import get_job_progress, update_job_progress
from services.fbt.backfill import BackfillJob
from services.fbt.errors import DataIntegrityWarning

from fbt_testing import build_service, fresh_database, seed_catalog, seed_orders


async def _historical_orders(service):
    """Five completed orders that predate the collector, plus one still pending."""
    completed = await seed_orders(service, [[1, 2], [1, 2], [1, 3], [2, 3], [4]])
    pending = await seed_orders(service, [[1, 4]], status="pending")
    return completed, pending


async def _drain(job, batch_size=2):
    results = []
    while True:
        result = await job.run_batch(batch_size)
        results.append(result)
        if result.completed:
            return results


def test_start_counts_only_unprocessed_completed_orders():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            completed, _ = await _historical_orders(service)
            await service.collector.process(completed[0])

            status = await service.start_backfill()
            assert status["state"] == "running"
            assert status["total"] == 4
            assert status["remaining"] == 4
            assert status["last_processed_id"] == 0

    asyncio.run(scenario())


def test_backfill_builds_same_counters_as_live_collection():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await _historical_orders(service)
            await service.start_backfill()

            results = await _drain(service.backfill)

            assert [r.processed for r in results] == [2, 2, 1]
            assert results[-1].remaining == 0
            rel = service.relationships
            assert await rel.get_count(1, 2) == 2
            assert await rel.get_count(3, 1) == 1
            assert await rel.get_count(2, 3) == 1
            assert await service.stats.get_order_counts([1, 2, 3, 4]) == {1: 3, 2: 3, 3: 2, 4: 1}

            status = await service.backfill_status()
            assert status["state"] == "completed"
            assert status["completed"] is True
            assert status["processed"] == 5
            assert status["is_running"] is False

    asyncio.run(scenario())


def test_interrupted_backfill_resumes_from_saved_cursor():
    async def scenario():
        async with fresh_database() as factory:
            first_worker = build_service(factory)
            completed, _ = await _historical_orders(first_worker)
            await first_worker.start_backfill()
            first = await first_worker.backfill.run_batch(2)
            assert first.last_order_id == completed[1]

            # a fresh process only knows what was persisted
            second_worker = build_service(factory)
            results = await _drain(second_worker.backfill)

            assert sum(r.processed for r in results) == 3
            assert await second_worker.relationships.get_count(1, 2) == 2
            assert await second_worker.stats.get_order_count(1) == 3

    asyncio.run(scenario())


def test_run_batch_starts_a_job_that_never_started():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await _historical_orders(service)

            result = await service.backfill.run_batch(2)

            assert result.processed == 2
            assert result.remaining == 3
            assert (await service.backfill_status())["state"] == "running"

    asyncio.run(scenario())


def test_poison_order_is_counted_and_passed():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            (good,) = await seed_orders(service, [[1, 2]])
            (broken,) = await service.host.create_orders_with_lines(
                [{"status": "completed", "lines": [{"variation_id": 777}]}]
            )
            (late,) = await seed_orders(service, [[2, 3]])

            await service.start_backfill()
            results = await _drain(service.backfill)

            assert sum(r.errors for r in results) == 1
            assert results[-1].last_order_id >= late
            status = await service.backfill_status()
            assert status["state"] == "completed"
            assert status["errors"] == 1
            assert await service.relationships.get_count(2, 3) == 1
            assert broken > good

    asyncio.run(scenario())


def test_explicit_cursor_overrides_saved_cursor():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            completed, _ = await _historical_orders(service)
            await service.start_backfill()

            result = await service.backfill.run_batch(2, cursor=completed[2])

            assert result.processed == 2
            assert result.last_order_id == completed[4]
            assert await service.relationships.get_count(1, 2) == 0

    asyncio.run(scenario())


def test_no_pending_orders_completes_immediately():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            status = await service.start_backfill()
            assert status["state"] == "completed"

            result = await service.backfill.run_batch(2)
            assert result.completed and result.processed == 0

    asyncio.run(scenario())


def test_rebuild_replaces_counters_without_doubling():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            completed, _ = await _historical_orders(service)
            for order_id in completed:
                await service.collector.process(order_id)

            status = await service.start_backfill(rebuild=True)
            assert status["relationships_cleared"] > 0
            assert status["total"] == 5
            await _drain(service.backfill)

            assert await service.relationships.get_count(1, 2) == 2
            # stats kept their own marker, so the rebuild does not recount them
            assert await service.stats.get_order_count(1) == 3

    asyncio.run(scenario())


def test_tick_runs_until_complete_within_budget():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await _historical_orders(service)
            await service.start_backfill()

            tick = await service.backfill.tick(time_budget_seconds=60, batch_size=2)

            assert tick.completed and not tick.reschedule
            assert tick.batches == 3
            assert tick.processed == 5
            assert tick.delay_seconds == 0

    asyncio.run(scenario())


def test_tick_asks_to_be_rescheduled_when_out_of_time():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory, backfill_settings=BackfillSettings(batch_size=2, batch_delay_seconds=7))
            await _historical_orders(service)
            await service.start_backfill()

            tick = await service.backfill.tick(time_budget_seconds=1e-9, batch_size=2)

            assert tick.batches == 1
            assert tick.reschedule and not tick.completed
            assert tick.delay_seconds == 7
            assert (await service.backfill_status())["last_processed_id"] > 0

    asyncio.run(scenario())


def test_stats_backfill_recovers_missing_denominators():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory, settings=FBTSettings(threshold_percent=50))
            await seed_catalog(service, [1, 2, 3, 4])
            completed, _ = await _historical_orders(service)
            for order_id in completed:
                await service.collector.process(order_id)

            status = await service.start_stats_backfill(rebuild=True)
            assert status["stats_cleared"] == 4
            assert status["total"] == 5
            with pytest.warns(DataIntegrityWarning):
                assert await service.recommendations_for(1) == []

            tick = await service.run_stats_backfill_tick(60)
            assert tick["completed"]
            assert await service.stats.get_order_counts([1, 2, 3, 4]) == {1: 3, 2: 3, 3: 2, 4: 1}
            assert await service.recommendations_for(1) == [2]

            # a second pass over the same orders is a no-op
            await service.start_stats_backfill()
            await service.run_stats_backfill_tick(60)
            assert await service.stats.get_order_count(1) == 3

    asyncio.run(scenario())


def test_progress_rejects_unknown_fields():
    async def scenario():
        async with fresh_database() as factory:
            with pytest.raises(ValueError):
                await update_job_progress("fbt_backfill", session_factory=factory, cursor=5)

    asyncio.run(scenario())


def test_progress_counters_are_summed_by_the_database():
    async def scenario():
        async with fresh_database() as factory:
            await update_job_progress("fbt_backfill", session_factory=factory, increment={"processed": 2})
            await update_job_progress("fbt_backfill", session_factory=factory, increment={"processed": 3, "errors": 1})

            snapshot = await get_job_progress("fbt_backfill", session_factory=factory)
            assert snapshot["processed"] == 5
            assert snapshot["errors"] == 1

            with pytest.raises(ValueError):
                await update_job_progress(
                    "fbt_backfill", session_factory=factory, processed=1, increment={"processed": 1}
                )

    asyncio.run(scenario())


def test_batches_from_the_same_snapshot_both_count(monkeypatch):
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            completed, _ = await _historical_orders(service)
            job = service.backfill
            snapshot = await job.start()

            async def same_snapshot():
                return dict(snapshot)

            # two workers that both read progress before either saved
            monkeypatch.setattr(job, "status", same_snapshot)
            first = await job.run_batch(2, cursor=0)
            second = await job.run_batch(2, cursor=completed[1])
            assert first.processed == second.processed == 2

            progress = await get_job_progress(job.job_name, session_factory=factory)
            assert progress["processed"] == 4
            assert progress["last_processed_id"] == completed[3]

    asyncio.run(scenario())


def test_progress_table_is_created_on_first_write():
    async def scenario():
        engine = build_engine("sqlite+aiosqlite:///:memory:")
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            snapshot = await get_job_progress("fbt_backfill", session_factory=factory)
            assert snapshot["state"] == "not_started"

            await update_job_progress("fbt_backfill", session_factory=factory, state="running", total=3)
            snapshot = await get_job_progress("fbt_backfill", session_factory=factory)
            assert snapshot["state"] == "running"
            assert snapshot["total"] == 3
        finally:
            await engine.dispose()

    asyncio.run(scenario())


def test_jobs_keep_separate_state():
    async def scenario():
        async with fresh_database() as factory:
            service = build_service(factory)
            await _historical_orders(service)
            await service.start_backfill()

            assert (await service.stats_backfill_status())["state"] == "not_started"
            assert isinstance(service.stats_backfill, BackfillJob)
            assert service.stats_backfill.job_name != service.backfill.job_name

    asyncio.run(scenario())


def test_deadline_budget():
    from services.deadlines import Deadline

    assert Deadline(seconds=0).expired
    running = Deadline(seconds=60)
    assert not running.expired
    assert 0 < running.remaining() <= 60
    assert running.elapsed() >= 0
