"""
FBT Response Schemas
====================

Canonical JSON shapes returned by the /api/fbt endpoints. Service results are
snake_case dicts; these helpers convert them to the camelCase payloads the
storefront and admin screens consume.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, TypedDict


class RecommendationsDict(TypedDict):
    productId: int
    recommendations: List[int]


class CollectOutcomeDict(TypedDict, total=False):
    orderId: int
    status: str
    products: List[int]
    pairs: int
    reason: Optional[str]
    scheduled: bool


class BatchOutcomeDict(TypedDict, total=False):
    requested: int
    processed: int
    skipped: int
    errors: int
    pairs: int
    failedOrderIds: List[int]


class BackfillBatchDict(TypedDict):
    processed: int
    errors: int
    skipped: int
    lastOrderId: int
    remaining: int
    completed: bool


class BackfillStatusDict(TypedDict, total=False):
    jobName: str
    state: str
    lastProcessedId: int
    processed: int
    errors: int
    total: int
    remaining: int
    isRunning: bool
    completed: bool
    startedAt: Optional[str]
    lastRunAt: Optional[str]
    completedAt: Optional[str]
    batchSize: int
    batchesCount: int


class CleanupResultDict(TypedDict):
    lowCountDeleted: int
    orphanedDeleted: int
    staleDeleted: int
    statsDeleted: int
    cacheExpiredDeleted: int


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camelize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow snake_case -> camelCase key conversion; datetimes become ISO strings."""
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        out[to_camel(key)] = value
    return out


def recommendations_payload(product_id: int, product_ids: List[int]) -> RecommendationsDict:
    return {"productId": int(product_id), "recommendations": [int(pid) for pid in product_ids]}


def backfill_status_payload(status: Dict[str, Any]) -> BackfillStatusDict:
    return camelize(status)  # type: ignore[return-value]


def collect_outcome_payload(outcome: Dict[str, Any]) -> CollectOutcomeDict:
    """Single-order result, either processed inline or handed to the scheduler."""
    return camelize(outcome)  # type: ignore[return-value]


def batch_outcome_payload(outcome: Dict[str, Any]) -> BatchOutcomeDict:
    return camelize(outcome)  # type: ignore[return-value]


def backfill_batch_payload(result: Dict[str, Any]) -> BackfillBatchDict:
    return camelize(result)  # type: ignore[return-value]


def cleanup_payload(result: Dict[str, int]) -> CleanupResultDict:
    return camelize(result)  # type: ignore[return-value]
