from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shared.db import get_db
from shared.models import RequestStatus, as_utc
from tryon import records
from tryon.cache import ResultCache
from tryon.errors import LimitExceeded
from tryon.ledger import PLANS, UsageLedgerService, plan_for_name

from ..dependencies import get_cache, get_ledger, get_shop
from ..schemas.tryon import (
    LimitsUpdateRequest,
    PlanChangeRequest,
    ProductToggleRequest,
    ProductToggleResponse,
    RequestListResponse,
    RequestSummary,
    StoreStatsResponse,
    UsageResponse,
)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/stats", response_model=StoreStatsResponse)
def store_stats(
    shop: str = Depends(get_shop),
    session: Session = Depends(get_db),
    ledger: UsageLedgerService = Depends(get_ledger),
    cache: ResultCache = Depends(get_cache),
):
    body = StoreStatsResponse(
        stats=records.store_statistics(session, shop, ledger),
        usage=ledger.snapshot(shop),
        cache=cache.stats(shop),
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.get("/requests", response_model=RequestListResponse)
def list_store_requests(
    shop: str = Depends(get_shop),
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_db),
):
    rows, total = records.list_requests(session, shop, status_filter, limit=limit, offset=offset)
    body = RequestListResponse(
        requests=[
            RequestSummary(
                id=row.id,
                product_id=row.product_id,
                product_title=row.product_title,
                status=row.status.value,
                cached=row.cached,
                attempts=row.attempts,
                error_code=row.error_code,
                result_image=row.result_reference,
                created_at=as_utc(row.created_at).isoformat(),
            )
            for row in rows
        ],
        total=total,
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.post("/products/{product_id}/toggle", response_model=ProductToggleResponse)
def toggle_product(
    product_id: str,
    payload: ProductToggleRequest,
    shop: str = Depends(get_shop),
    ledger: UsageLedgerService = Depends(get_ledger),
):
    try:
        setting = ledger.set_product_enabled(shop, product_id, payload.enabled)
    except LimitExceeded as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    capacity = ledger.has_product_capacity(shop)
    body = ProductToggleResponse(
        product_id=product_id,
        enabled=setting.enabled,
        limit=capacity.limit,
        current=capacity.current,
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.delete("/cache/{product_id}")
def invalidate_product_cache(
    product_id: str,
    shop: str = Depends(get_shop),
    cache: ResultCache = Depends(get_cache),
) -> dict:
    return {"success": True, "deleted": cache.invalidate_product(shop, product_id)}


def _usage(ledger: UsageLedgerService, shop: str) -> JSONResponse:
    body = UsageResponse(usage=ledger.snapshot(shop))
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@router.put("/limits", response_model=UsageResponse)
def set_custom_limits(
    payload: LimitsUpdateRequest,
    shop: str = Depends(get_shop),
    ledger: UsageLedgerService = Depends(get_ledger),
):
    try:
        ledger.set_limits(shop, payload.credits_limit, payload.product_limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _usage(ledger, shop)


@router.delete("/limits", response_model=UsageResponse)
def clear_custom_limits(
    shop: str = Depends(get_shop),
    ledger: UsageLedgerService = Depends(get_ledger),
):
    ledger.clear_custom_limits(shop)
    return _usage(ledger, shop)


@router.post("/plan", response_model=UsageResponse)
def change_plan(
    payload: PlanChangeRequest,
    shop: str = Depends(get_shop),
    ledger: UsageLedgerService = Depends(get_ledger),
):
    """Apply a plan by catalogue key (``BUSINESS``) or subscription name (``Business``)."""

    plan = PLANS.get(payload.plan.strip().upper()) or plan_for_name(payload.plan)
    if plan is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown plan")
    ledger.apply_plan(shop, plan.key)
    return _usage(ledger, shop)
