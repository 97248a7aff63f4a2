"""
Error taxonomy for the frequently-bought-together engine.
"""
from __future__ import annotations

from typing import Optional


class FBTError(Exception):
    """Base class for FBT engine failures."""


class TransientStoreError(FBTError):
    """A store or cache backend was unreachable. Retry later or fail open."""


class PoisonRecordError(FBTError):
    """A single order that cannot be folded into the stores."""

    def __init__(self, order_id: Optional[int], reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"order {order_id}: {reason}")


class DataIntegrityWarning(UserWarning):
    """
    Recoverable inconsistency between the stores (zero denominator with live
    pairs, one-directional pair rows). Logged, then repaired by a backfill run.
    """
