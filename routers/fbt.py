"""
Frequently Bought Together Router
Storefront recommendations, order hooks, backfill and cleanup administration
"""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from schemas import (
    BackfillStatusDict,
    camelize,
    recommendations_payload,
    collect_outcome_payload,
    batch_outcome_payload,
    backfill_batch_payload,
    backfill_status_payload,
    cleanup_payload,
)
from services.fbt.errors import PoisonRecordError, TransientStoreError
from services.fbt.service import FBTService, get_fbt_service
from settings import CleanupSettings, clamp_batch_size

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fbt", tags=["Frequently Bought Together"])


class OrdersBatchRequest(BaseModel):
    order_ids: List[int] = Field(..., alias="orderIds", min_length=1, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class BackfillStartRequest(BaseModel):
    batch_size: Optional[int] = Field(None, alias="batchSize")
    rebuild: bool = False

    model_config = ConfigDict(populate_by_name=True)


class BackfillProcessRequest(BaseModel):
    batch_size: Optional[int] = Field(None, alias="batchSize")
    last_order_id: Optional[int] = Field(None, alias="lastOrderId", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class CleanupRequest(BaseModel):
    min_pair_count: Optional[int] = Field(None, alias="minPairCount", ge=1)
    retention_days: Optional[int] = Field(None, alias="retentionDays", ge=1)

    model_config = ConfigDict(populate_by_name=True)


def _parse_ids(raw: Optional[str]) -> List[int]:
    ids = []
    for token in (raw or "").split(","):
        token = token.strip()
        if token.isdigit():
            ids.append(int(token))
    return ids


def _parse_limit(raw: Optional[str]) -> Optional[int]:
    try:
        value = int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None
    if value is None:
        return None
    return max(1, min(20, value))



def _start_payload(status: Dict[str, Any], requested: Optional[int], default: int) -> BackfillStatusDict:
    """Started-job status plus how many batches of the clamped size the pending orders need."""
    payload = backfill_status_payload(status)
    batch_size = clamp_batch_size(requested, default)
    remaining = int(status.get("remaining") or 0)
    payload["batchSize"] = batch_size
    payload["batchesCount"] = math.ceil(remaining / batch_size) if remaining > 0 else 0
    return payload

@router.get("/recommendations/{product_id}")
async def get_recommendations(
    product_id: int,
    limit: Optional[str] = None,
    cart: Optional[str] = None,
    service: FBTService = Depends(get_fbt_service),
):
    """Storefront endpoint: an empty list is the only failure presentation."""
    try:
        product_ids = await service.recommendations_for(
            product_id,
            limit=_parse_limit(limit),
            cart_product_ids=_parse_ids(cart),
        )
    except Exception:
        logger.exception("Recommendations endpoint failed | product_id=%s", product_id)
        product_ids = []
    return recommendations_payload(product_id, product_ids)


@router.post("/orders/{order_id}/completed")
async def order_completed(
    order_id: int,
    defer: bool = False,
    service: FBTService = Depends(get_fbt_service),
):
    """Order-completion hook; defer=true hands the order to the background scheduler."""
    try:
        if defer:
            return collect_outcome_payload(await service.schedule_completed_order(order_id))
        return collect_outcome_payload(await service.process_completed_order(order_id))
    except PoisonRecordError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except TransientStoreError as e:
        logger.error(f"Order hook store error: {e}")
        raise HTTPException(status_code=503, detail="Store temporarily unavailable")
    except Exception as e:
        logger.exception(f"Order hook error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process order")


@router.post("/orders/batch")
async def orders_batch(
    request: OrdersBatchRequest,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        return batch_outcome_payload(await service.process_orders_batch(request.order_ids))
    except Exception as e:
        logger.exception(f"Orders batch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process orders batch")


@router.post("/backfill/start")
async def backfill_start(
    request: BackfillStartRequest,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        status = await service.start_backfill(rebuild=request.rebuild)
        return _start_payload(status, request.batch_size, service.backfill.settings.batch_size)
    except Exception as e:
        logger.exception(f"Backfill start error: {e}")
        raise HTTPException(status_code=500, detail="Failed to start backfill")


@router.post("/backfill/process")
async def backfill_process(
    request: BackfillProcessRequest,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        result = await service.run_backfill_batch(request.batch_size, request.last_order_id)
        return backfill_batch_payload(result)
    except Exception as e:
        logger.exception(f"Backfill batch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process backfill batch")


@router.get("/backfill/status")
async def backfill_status(service: FBTService = Depends(get_fbt_service)):
    try:
        return backfill_status_payload(await service.backfill_status())
    except Exception as e:
        logger.exception(f"Backfill status error: {e}")
        raise HTTPException(status_code=500, detail="Failed to read backfill status")


@router.post("/stats-backfill/start")
async def stats_backfill_start(
    request: BackfillStartRequest,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        status = await service.start_stats_backfill(rebuild=request.rebuild)
        return _start_payload(status, request.batch_size, service.stats_backfill.settings.batch_size)
    except Exception as e:
        logger.exception(f"Stats backfill start error: {e}")
        raise HTTPException(status_code=500, detail="Failed to start stats backfill")


@router.post("/stats-backfill/process")
async def stats_backfill_process(
    request: BackfillProcessRequest,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        result = await service.run_stats_backfill_batch(request.batch_size, request.last_order_id)
        return backfill_batch_payload(result)
    except Exception as e:
        logger.exception(f"Stats backfill batch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process stats backfill batch")


@router.get("/stats-backfill/status")
async def stats_backfill_status(service: FBTService = Depends(get_fbt_service)):
    try:
        return backfill_status_payload(await service.stats_backfill_status())
    except Exception as e:
        logger.exception(f"Stats backfill status error: {e}")
        raise HTTPException(status_code=500, detail="Failed to read stats backfill status")


@router.post("/cleanup")
async def run_cleanup(
    request: Optional[CleanupRequest] = None,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        settings = None
        if request is not None and (request.min_pair_count or request.retention_days):
            defaults = service.cleanup.settings
            settings = CleanupSettings(
                min_pair_count=request.min_pair_count or defaults.min_pair_count,
                retention_days=request.retention_days or defaults.retention_days,
                batch_size=defaults.batch_size,
                orphan_page_size=defaults.orphan_page_size,
            )
        return cleanup_payload(await service.run_cleanup(settings))
    except Exception as e:
        logger.exception(f"Cleanup error: {e}")
        raise HTTPException(status_code=500, detail="Failed to run cleanup")


@router.delete("/products/{product_id}")
async def purge_product(
    product_id: int,
    service: FBTService = Depends(get_fbt_service),
):
    try:
        return camelize(await service.purge_product(product_id))
    except Exception as e:
        logger.exception(f"Product purge error: {e}")
        raise HTTPException(status_code=500, detail="Failed to purge product data")
