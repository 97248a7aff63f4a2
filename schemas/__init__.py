"""
FBT Schemas Package
Canonical response shapes for the co-purchase endpoints.
"""

from .fbt_schemas import (
    RecommendationsDict,
    CollectOutcomeDict,
    BatchOutcomeDict,
    BackfillBatchDict,
    BackfillStatusDict,
    CleanupResultDict,
    to_camel,
    camelize,
    recommendations_payload,
    collect_outcome_payload,
    batch_outcome_payload,
    backfill_batch_payload,
    backfill_status_payload,
    cleanup_payload,
)

__all__ = [
    "RecommendationsDict",
    "CollectOutcomeDict",
    "BatchOutcomeDict",
    "BackfillBatchDict",
    "BackfillStatusDict",
    "CleanupResultDict",
    "to_camel",
    "camelize",
    "recommendations_payload",
    "collect_outcome_payload",
    "batch_outcome_payload",
    "backfill_batch_payload",
    "backfill_status_payload",
    "cleanup_payload",
]
