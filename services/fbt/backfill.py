"""
Resumable backfill jobs that replay historical completed orders through the collector.

Each job is a small state machine persisted in fbt_job_state:

    not_started -> running -> (run_batch ...) -> completed

The cursor (last_processed_id) is saved after every batch, so an interrupted
job resumes where it stopped. Redoing a half-finished batch never double counts
because the collector's processed markers make every fold exactly-once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from database import utcnow
from settings import BackfillSettings
from services.deadlines import Deadline
from services.progress_tracker import get_job_progress, update_job_progress
from services.storage import StorageService, storage
from services.fbt.collector import BatchOutcome, FBTCollector
from services.fbt.markers import PAIRS_MARKER, STATS_MARKER

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    processed: int
    errors: int
    skipped: int
    last_order_id: int
    remaining: int
    completed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TickResult:
    batches: int
    processed: int
    errors: int
    remaining: int
    completed: bool
    reschedule: bool
    delay_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BackfillJob:
    """Replays completed orders that lack the pairs marker through the full collector."""

    job_name = "fbt_backfill"
    marker = PAIRS_MARKER
    stats_only = False

    def __init__(
        self,
        collector: Optional[FBTCollector] = None,
        host: Optional[StorageService] = None,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[BackfillSettings] = None,
    ):
        self._session_factory = session_factory
        self.collector = collector or FBTCollector(session_factory)
        self.host = host or self.collector.host or storage
        self.settings = settings or BackfillSettings.from_env()

    # --------- persisted state ---------
    async def _save(self, **fields: Any) -> None:
        await update_job_progress(self.job_name, session_factory=self._session_factory, **fields)

    async def status(self) -> Dict[str, Any]:
        snapshot = await get_job_progress(self.job_name, session_factory=self._session_factory)
        snapshot["completed"] = snapshot["state"] == "completed"
        return snapshot

    # --------- hooks overridden by the stats variant ---------
    async def count_pending(self) -> int:
        return await self.host.count_completed_orders(unprocessed_marker=self.marker)

    async def select_batch(self, cursor: int, batch_size: int) -> List[int]:
        return await self.host.get_completed_order_ids(
            after_id=cursor, limit=batch_size, unprocessed_marker=self.marker
        )

    async def clear_derived_data(self) -> Dict[str, int]:
        """Wipe everything this job rebuilds. Runs only on start(rebuild=True)."""
        collector = self.collector
        relationships = await collector.relationships.clear()
        markers = await collector.markers.clear(PAIRS_MARKER)
        await collector.cache.invalidate_all()
        return {"relationships_cleared": relationships, "markers_cleared": markers}

    # --------- state machine ---------
    async def start(self, rebuild: bool = False) -> Dict[str, Any]:
        """
        Reset the cursor and compute the pending total. This is the only full
        count the job performs; later batches only estimate what is left.
        """
        cleared: Dict[str, int] = {}
        if rebuild:
            cleared = await self.clear_derived_data()
            logger.warning("Backfill rebuild requested | job=%s cleared=%s", self.job_name, cleared)

        total = await self.count_pending()
        now = utcnow()
        await self._save(
            state="running" if total > 0 else "completed",
            last_processed_id=0,
            processed=0,
            errors=0,
            total=total,
            remaining=total,
            is_running=total > 0,
            started_at=now,
            last_run_at=None,
            completed_at=None if total > 0 else now,
        )
        logger.info("Backfill started | job=%s total=%d rebuild=%s", self.job_name, total, rebuild)
        status = await self.status()
        status.update(cleared)
        return status

    async def run_batch(self, batch_size: Optional[int] = None, cursor: Optional[int] = None) -> BatchResult:
        """
        Fold the next page of orders above the cursor.

        The cursor advances to the highest order id selected even when some of
        those orders failed, so one poison order can never stall the job.
        """
        batch_size = int(batch_size or self.settings.batch_size)
        state = await self.status()
        if state["state"] == "not_started":
            state = await self.start()

        if cursor is None:
            cursor = int(state["last_processed_id"] or 0)
        cursor = int(cursor)

        order_ids = await self.select_batch(cursor, batch_size)
        if not order_ids:
            await self._finish(state, cursor)
            return BatchResult(0, 0, 0, cursor, 0, True)

        try:
            outcome = await self.collector.process_batch(order_ids, stats_only=self.stats_only)
        except Exception:
            logger.exception("Backfill batch failed | job=%s cursor=%s", self.job_name, cursor)
            outcome = BatchOutcome(requested=len(order_ids), errors=len(order_ids))

        new_cursor = max(order_ids)
        # an estimate; processed and errors are summed by the database
        remaining = max(0, int(state["remaining"] or 0) - len(order_ids))
        completed = len(order_ids) < batch_size or remaining == 0

        await self._save(
            increment={"processed": outcome.processed, "errors": outcome.errors},
            last_processed_id=new_cursor,
            remaining=remaining,
            last_run_at=utcnow(),
        )
        if completed:
            await self._finish(None, new_cursor)

        logger.info(
            "Backfill batch | job=%s cursor=%s->%s processed=%d errors=%d remaining~%d completed=%s",
            self.job_name,
            cursor,
            new_cursor,
            outcome.processed,
            outcome.errors,
            remaining,
            completed,
        )
        return BatchResult(
            processed=outcome.processed,
            errors=outcome.errors,
            skipped=outcome.skipped,
            last_order_id=new_cursor,
            remaining=remaining,
            completed=completed,
        )

    async def _finish(self, state: Optional[Dict[str, Any]], cursor: int) -> None:
        if state is not None and state["state"] == "completed" and state["last_processed_id"] == cursor:
            return
        now = utcnow()
        await self._save(
            state="completed",
            is_running=False,
            remaining=0,
            last_processed_id=cursor,
            last_run_at=now,
            completed_at=now,
        )
        logger.info("Backfill completed | job=%s cursor=%s", self.job_name, cursor)

    async def tick(self, time_budget_seconds: Optional[float] = None, batch_size: Optional[int] = None) -> TickResult:
        """
        Run batches until the job completes or the soft deadline passes.
        reschedule tells an external scheduler to invoke tick() again later.
        """
        deadline = Deadline(seconds=time_budget_seconds or self.settings.time_budget_seconds)
        batches = processed = errors = 0
        result: Optional[BatchResult] = None
        while True:
            result = await self.run_batch(batch_size=batch_size)
            batches += 1
            processed += result.processed
            errors += result.errors
            if result.completed or deadline.expired:
                break

        reschedule = not result.completed
        if reschedule:
            logger.info(
                "Backfill tick out of time | job=%s batches=%d elapsed=%.1fs remaining~%d next_in=%ss",
                self.job_name,
                batches,
                deadline.elapsed(),
                result.remaining,
                self.settings.batch_delay_seconds,
            )
        return TickResult(
            batches=batches,
            processed=processed,
            errors=errors,
            remaining=result.remaining,
            completed=result.completed,
            reschedule=reschedule,
            delay_seconds=self.settings.batch_delay_seconds if reschedule else 0,
        )


class StatsBackfillJob(BackfillJob):
    """
    Replays every completed order and folds only the product order counts.
    The stats marker keeps this exactly-once with respect to the live collector.
    """

    job_name = "fbt_stats_backfill"
    marker = STATS_MARKER
    stats_only = True

    async def count_pending(self) -> int:
        return await self.host.count_completed_orders()

    async def select_batch(self, cursor: int, batch_size: int) -> List[int]:
        return await self.host.get_completed_order_ids(after_id=cursor, limit=batch_size)

    async def clear_derived_data(self) -> Dict[str, int]:
        collector = self.collector
        stats = await collector.stats.clear()
        markers = await collector.markers.clear(STATS_MARKER)
        await collector.cache.invalidate_all()
        return {"stats_cleared": stats, "markers_cleared": markers}
