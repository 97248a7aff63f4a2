# --- models.py (or the models section of database.py) ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, BigInteger, DateTime, Boolean,
    ForeignKey, func, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime, timezone
from typing import Optional
import logging, os

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# Integer primary keys that autoincrement on both PostgreSQL and SQLite.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")


def build_engine(url: str) -> AsyncEngine:
    """Create the async engine for a URL; SQLite URLs get a single shared connection."""
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    connect_args = {
        "server_settings": {
            "application_name": "fbt_engine",
        },
        "command_timeout": 60,  # seconds
        "timeout": 30,  # connection timeout in seconds
    }
    # asyncpg uses 'ssl', not 'sslmode'
    if "sslmode=require" in url or "sslmode=verify-full" in url:
        for mode in ("require", "verify-full"):
            url = url.replace(f"?sslmode={mode}", "").replace(f"&sslmode={mode}", "")
        connect_args["ssl"] = "require"

    return create_async_engine(
        url,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=15,
        connect_args=connect_args,
    )


if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "fbt")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = build_engine(DATABASE_URL)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
        if url.startswith("sqlite"):
            return url
    except Exception:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dialect_insert(session: AsyncSession, model):
    """
    Return an INSERT construct supporting ON CONFLICT for the session's dialect.
    PostgreSQL and SQLite share the on_conflict_do_update/do_nothing API.
    """
    bind = session.bind
    dialect_name = bind.dialect.name if bind is not None else "postgresql"
    if dialect_name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")


async def check_db_health() -> dict:
    """Lightweight health probe used by the API health endpoint."""
    start = datetime.now()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = int((datetime.now() - start).total_seconds() * 1000)
        return {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        logger.warning("DB health check failed: %s", e)
        return {"status": "unhealthy", "error": str(e)}

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# HOST MODELS (order/catalog system, read by the FBT engine)
# -------------------------------------------------------------------

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    order_lines = relationship("OrderLine", back_populates="order")


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("orders.id"), nullable=False)

    # Parent product; variations carry their own id in variation_id
    product_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    variation_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="order_lines")


class Product(Base):
    __tablename__ = "products"

    product_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    parent_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    purchasable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

# -------------------------------------------------------------------
# FBT MODELS
# -------------------------------------------------------------------

class FBTRelationship(Base):
    """One directed row per (product, related product); both directions share a count."""
    __tablename__ = "fbt_relationships"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    related_product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    co_purchase_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "related_product_id", name="uq_fbt_relationships_pair"),
        CheckConstraint("co_purchase_count >= 1", name="ck_fbt_relationships_count"),
        CheckConstraint("product_id <> related_product_id", name="ck_fbt_relationships_distinct"),
    )


class FBTProductStat(Base):
    __tablename__ = "fbt_product_stats"

    product_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("order_count >= 0", name="ck_fbt_product_stats_count"),
    )


class OrderMarker(Base):
    """Durable per-order, per-pipeline processed flag. Never expires."""
    __tablename__ = "order_markers"

    order_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    marker: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class FBTJobState(Base):
    __tablename__ = "fbt_job_state"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(Text, nullable=False, default="not_started")
    last_processed_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "state IN ('not_started','running','completed')",
            name="ck_fbt_job_state_state",
        ),
    )


class FBTCacheEntry(Base):
    __tablename__ = "fbt_cache_entries"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_fbt_relationships_product_count',
      FBTRelationship.product_id, FBTRelationship.co_purchase_count)
Index('ix_fbt_relationships_related', FBTRelationship.related_product_id)
Index('ix_fbt_relationships_updated_at', FBTRelationship.updated_at)
Index('ix_order_markers_marker_order', OrderMarker.marker, OrderMarker.order_id)
Index('ix_orders_status_id', Order.status, Order.id)
Index('ix_order_lines_order', OrderLine.order_id)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def init_db(bind: Optional[AsyncEngine] = None):
    """Ensure tables exist."""
    target = bind or engine
    if bind is None:
        await probe_db_connection()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
