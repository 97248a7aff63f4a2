"""
Backfill job progress persistence helpers.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Mapping, Optional

from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import AsyncSessionLocal, FBTJobState, dialect_insert, utcnow

logger = logging.getLogger(__name__)

JobState = Literal["not_started", "running", "completed"]

_JOB_FIELDS = (
    "state",
    "last_processed_id",
    "processed",
    "errors",
    "total",
    "remaining",
    "is_running",
    "started_at",
    "last_run_at",
    "completed_at",
)


def default_job_progress(job_name: str) -> Dict[str, Any]:
    return {
        "job_name": job_name,
        "state": "not_started",
        "last_processed_id": 0,
        "processed": 0,
        "errors": 0,
        "total": 0,
        "remaining": 0,
        "is_running": False,
        "started_at": None,
        "last_run_at": None,
        "completed_at": None,
    }


def _is_missing_table(exc: Exception) -> bool:
    text = str(exc).lower()
    return "fbt_job_state" in text and ("no such table" in text or "does not exist" in text or "undefined" in text)


async def _create_table(session) -> None:
    def _create(sync_session):
        FBTJobState.__table__.create(bind=sync_session.bind, checkfirst=True)

    await session.run_sync(_create)
    await session.commit()


async def update_job_progress(
    job_name: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    increment: Optional[Mapping[str, int]] = None,
    **fields: Any,
) -> None:
    """
    Upsert the latest progress snapshot for a job. Only the given fields change.

    Counters named in increment are added to the stored value inside the
    upsert instead of being written as totals.
    """
    increment = {key: int(amount) for key, amount in (increment or {}).items()}
    unknown = (set(fields) | set(increment)) - set(_JOB_FIELDS)
    if unknown:
        raise ValueError(f"unknown job progress fields: {sorted(unknown)}")
    overlap = set(fields) & set(increment)
    if overlap:
        raise ValueError(f"fields both set and incremented: {sorted(overlap)}")

    values = {**fields, **increment, "updated_at": utcnow()}
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        table = FBTJobState.__table__
        stmt = dialect_insert(session, FBTJobState).values(job_name=job_name, **values)
        set_ = {table.c[key]: value for key, value in values.items() if key not in increment}
        set_.update({table.c[key]: table.c[key] + stmt.excluded[key] for key in increment})
        stmt = stmt.on_conflict_do_update(index_elements=[table.c.job_name], set_=set_)
        try:
            await session.execute(stmt)
        except (ProgrammingError, OperationalError) as exc:
            if not _is_missing_table(exc):
                raise
            logger.warning("fbt_job_state table missing; attempting to create it on the fly")
            await session.rollback()
            await _create_table(session)
            await session.execute(stmt)
        await session.commit()

    logger.debug("Job progress updated | job=%s fields=%s", job_name, sorted([*fields, *increment]))


async def get_job_progress(
    job_name: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, Any]:
    """Fetch the persisted progress snapshot for a job (defaults if never started)."""
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            row = await session.get(FBTJobState, job_name)
        except (ProgrammingError, OperationalError) as exc:
            if not _is_missing_table(exc):
                raise
            return default_job_progress(job_name)
        if row is None:
            return default_job_progress(job_name)
        snapshot = {"job_name": row.job_name}
        snapshot.update({key: getattr(row, key) for key in _JOB_FIELDS})
        return snapshot

