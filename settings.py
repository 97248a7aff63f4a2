"""
Centralized configuration for the frequently-bought-together engine.
"""
from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, asdict
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _as_bool(value: Any, default: bool) -> bool:
    """Accept bools, ints and the legacy 'hide'/'show' strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on", "hide"):
        return True
    if text in ("0", "false", "no", "off", "show", ""):
        return False
    return default


# Cache
RECOMMENDATION_CACHE_TTL: int = _env_int("FBT_RECOMMENDATION_CACHE_TTL", 3600)
ORDER_COUNT_CACHE_TTL: int = _env_int("FBT_ORDER_COUNT_CACHE_TTL", 6 * 3600)
CACHE_BACKEND: str = (os.getenv("FBT_CACHE_BACKEND") or "memory").strip().lower()
# Upper bound on entries held by the in-process cache backend.
MEMORY_CACHE_MAX_ENTRIES: int = max(1, _env_int("FBT_MEMORY_CACHE_MAX_ENTRIES", 10000))

# Recommendation candidates are over-fetched so post-filtering still fills the limit.
OVERFETCH_FACTOR: int = 2

# Orders in this status are folded into the stores.
COMPLETED_ORDER_STATUS: str = os.getenv("FBT_COMPLETED_STATUS") or "completed"

MIN_BATCH_SIZE = 10
MAX_BATCH_SIZE = 500


@dataclass(frozen=True)
class FBTSettings:
    """Storefront-facing recommendation settings."""

    threshold_percent: float = 5.0
    limit: int = 4
    hide_if_in_cart: bool = True

    def __post_init__(self) -> None:
        threshold = float(self.threshold_percent)
        if not 0.0 <= threshold <= 100.0:
            raise ValueError(f"threshold_percent must be within 0..100, got {threshold}")
        limit = int(self.limit)
        if not 1 <= limit <= 20:
            raise ValueError(f"limit must be within 1..20, got {limit}")
        object.__setattr__(self, "threshold_percent", threshold)
        object.__setattr__(self, "limit", limit)
        object.__setattr__(self, "hide_if_in_cart", bool(self.hide_if_in_cart))

    @classmethod
    def from_env(cls) -> "FBTSettings":
        return cls(
            threshold_percent=_env_float("FBT_THRESHOLD_PERCENT", 5.0),
            limit=_env_int("FBT_MAX_PRODUCTS", 4),
            hide_if_in_cart=_as_bool(os.getenv("FBT_HIDE_IF_IN_CART"), True),
        )

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "FBTSettings":
        """
        Build settings from a loose mapping. Understands the legacy option keys
        (min_order_threshold, max_products, hide_if_in_cart='hide'|'show') as well
        as snake_case and camelCase names.
        """
        data = dict(data or {})
        base = cls()

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        threshold = pick("threshold_percent", "thresholdPercent", "min_order_threshold")
        limit = pick("limit", "max_products", "maxProducts")
        hide = pick("hide_if_in_cart", "hideIfInCart")
        return cls(
            threshold_percent=base.threshold_percent if threshold is None else float(threshold),
            limit=base.limit if limit is None else int(limit),
            hide_if_in_cart=_as_bool(hide, base.hide_if_in_cart),
        )

    def fingerprint(self) -> str:
        """Deterministic digest of every setting that changes recommendation output."""
        payload = json.dumps(
            {
                "threshold_percent": round(self.threshold_percent, 4),
                "hide_if_in_cart": self.hide_if_in_cart,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:12]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CleanupSettings:
    """Pruning knobs for the relationship store."""

    min_pair_count: int = 2
    retention_days: int = 365
    batch_size: int = 1000
    orphan_page_size: int = 500

    def __post_init__(self) -> None:
        if self.min_pair_count < 1:
            raise ValueError("min_pair_count must be >= 1")
        if self.retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        if self.batch_size < 1 or self.orphan_page_size < 1:
            raise ValueError("batch sizes must be positive")

    @classmethod
    def from_env(cls) -> "CleanupSettings":
        return cls(
            min_pair_count=_env_int("FBT_MIN_PAIR_COUNT", 2),
            retention_days=_env_int("FBT_RETENTION_DAYS", 365),
        )


@dataclass(frozen=True)
class BackfillSettings:
    """Batch sizing and per-invocation time budget for backfill jobs."""

    batch_size: int = 50
    time_budget_seconds: float = 100.0
    batch_delay_seconds: int = 5

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        if self.time_budget_seconds <= 0:
            raise ValueError("time_budget_seconds must be positive")

    @classmethod
    def from_env(cls) -> "BackfillSettings":
        return cls(
            batch_size=_env_int("FBT_BACKFILL_BATCH_SIZE", 50),
            time_budget_seconds=_env_float("FBT_BACKFILL_TIME_BUDGET", 100.0),
        )


def clamp_batch_size(value: Optional[Any], default: int = 100) -> int:
    """Bound an externally supplied batch size to MIN_BATCH_SIZE..MAX_BATCH_SIZE."""
    try:
        size = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        size = default
    if size <= 0:
        size = default
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))
