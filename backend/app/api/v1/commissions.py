# app/api/v1/commissions.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.permissions import require_admin, require_marketer
from app.api.deps.services import get_adjustment_ledger, get_commission_service
from app.core.errors import NotFoundError
from app.db.session import get_db
from app.models.product import Product
from app.models.user import User
from app.schemas.commissions import (
    AdjustmentOut,
    BulkApproveOut,
    ClawbackStatsOut,
    CommissionAdjustmentIn,
    CommissionCalculateIn,
    CommissionCreateIn,
    CommissionDetailOut,
    CommissionFromConversionIn,
    CommissionOut,
    CommissionQuoteOut,
    CommissionRecalculateIn,
    CommissionSummaryOut,
    CommissionsPageOut,
    CommissionTransitionIn,
    StatusHistoryEntry,
)
from app.services.adjustments import AdjustmentLedger
from app.services.commission_calculator import calculate, rules_from_product
from app.services.commissions import CommissionCreate, CommissionFilters, CommissionService

router = APIRouter(prefix="/commissions", tags=["commissions"])


def _detail_out(detail: Dict[str, Any]) -> CommissionDetailOut:
    return CommissionDetailOut(
        commission=CommissionOut.model_validate(detail["commission"]),
        adjustments=[AdjustmentOut.model_validate(a) for a in detail["adjustments"]],
        total_adjustments=detail["total_adjustments"],
        net_amount=detail["net_amount"],
    )


# -------------------------
# Quotes / creation
# -------------------------
@router.post("/calculate", response_model=CommissionQuoteOut)
async def calculate_commission(
    payload: CommissionCalculateIn,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Pure quote against the product's current rules. Nothing is stored.
    """
    product = await db.get(Product, payload.product_id)
    if product is None:
        raise NotFoundError("Product not found", product_id=str(payload.product_id))

    quote = calculate(
        payload.initial_spend_amount,
        rules_from_product(product),
        custom_rate=payload.custom_rate,
        custom_amount=payload.custom_amount,
        override=payload.override_product_rules,
    )
    return CommissionQuoteOut(commission_amount=quote.commission_amount, commission_rate=quote.commission_rate)


@router.post("", response_model=CommissionOut, status_code=status.HTTP_201_CREATED)
async def create_commission(
    payload: CommissionCreateIn,
    _admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    commission = await service.create_commission(CommissionCreate(**payload.model_dump()))
    return CommissionOut.model_validate(commission)


@router.post("/from-conversion", response_model=CommissionOut, status_code=status.HTTP_201_CREATED)
async def create_commission_from_conversion(
    payload: CommissionFromConversionIn,
    _admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    commission = await service.create_for_conversion(payload.conversion_id, marketer_id=payload.marketer_id)
    return CommissionOut.model_validate(commission)


# -------------------------
# Listing / aggregates
# -------------------------
@router.get("", response_model=CommissionsPageOut)
async def list_commissions(
    marketer_id: Optional[uuid.UUID] = Query(None),
    product_id: Optional[uuid.UUID] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    min_amount: Optional[Decimal] = Query(None),
    max_amount: Optional[Decimal] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    _admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    filters = CommissionFilters(
        marketer_id=marketer_id,
        product_id=product_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    rows, total = await service.list_commissions(filters, page=page, limit=limit)
    return CommissionsPageOut(
        items=[CommissionOut.model_validate(r) for r in rows],
        page=page,
        limit=limit,
        total=total,
    )


@router.post("/bulk-approve", response_model=BulkApproveOut)
async def bulk_approve(
    _admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    result = await service.bulk_approve_eligible()
    return BulkApproveOut(approved=result.approved, skipped=result.skipped, errors=result.errors)


@router.get("/me/summary", response_model=CommissionSummaryOut)
async def my_commission_summary(
    marketer: User = Depends(require_marketer),
    service: CommissionService = Depends(get_commission_service),
):
    summary = await service.get_commission_summary(marketer.id)
    balance = await service.get_available_balance(marketer.id)
    return CommissionSummaryOut(**summary, available_balance=balance)


@router.get("/stats/clawbacks", response_model=ClawbackStatsOut)
async def clawback_statistics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    marketer_id: Optional[uuid.UUID] = Query(None),
    _admin: User = Depends(require_admin),
    ledger: AdjustmentLedger = Depends(get_adjustment_ledger),
):
    stats = await ledger.get_clawback_statistics(start=start, end=end, marketer_id=marketer_id)
    return ClawbackStatsOut(**stats)


# -------------------------
# Single commission
# -------------------------
@router.get("/{commission_id}", response_model=CommissionDetailOut)
async def get_commission(
    commission_id: uuid.UUID,
    _admin: User = Depends(require_admin),
    ledger: AdjustmentLedger = Depends(get_adjustment_ledger),
):
    return _detail_out(await ledger.get_commission_with_adjustments(commission_id))


@router.get("/{commission_id}/history", response_model=List[StatusHistoryEntry])
async def get_status_history(
    commission_id: uuid.UUID,
    _admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    return [StatusHistoryEntry(**entry) for entry in await service.get_status_history(commission_id)]


@router.post("/{commission_id}/transitions", response_model=CommissionOut)
async def transition_commission(
    commission_id: uuid.UUID,
    payload: CommissionTransitionIn,
    admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    """
    approve | reject | mark_paid | claw_back.

    Illegal moves come back as 400 INVALID_TRANSITION with the current and target status.
    """
    commission = await service.transition(
        commission_id,
        payload.action,
        admin.id,
        reason=payload.reason,
        override_clearance=payload.override_clearance,
        payment_reference=payload.payment_reference,
        amount=payload.amount,
        clawback_type=payload.clawback_type,
    )
    return CommissionOut.model_validate(commission)


@router.post("/{commission_id}/recalculate", response_model=CommissionOut)
async def recalculate_commission(
    commission_id: uuid.UUID,
    payload: CommissionRecalculateIn,
    admin: User = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service),
):
    commission = await service.recalculate(
        commission_id,
        new_amount=payload.commission_amount,
        new_rate=payload.commission_rate,
        admin_id=admin.id,
    )
    return CommissionOut.model_validate(commission)


@router.post("/{commission_id}/adjustments", response_model=CommissionDetailOut, status_code=status.HTTP_201_CREATED)
async def adjust_commission(
    commission_id: uuid.UUID,
    payload: CommissionAdjustmentIn,
    admin: User = Depends(require_admin),
    ledger: AdjustmentLedger = Depends(get_adjustment_ledger),
):
    if payload.kind == "clawback":
        await ledger.process_clawback(
            commission_id, payload.amount, payload.reason, admin.id, clawback_type=payload.clawback_type
        )
    elif payload.kind == "partial_clawback":
        await ledger.process_partial_clawback(
            commission_id, payload.amount, payload.reason, admin.id, clawback_type=payload.clawback_type
        )
    else:
        await ledger.apply_manual_adjustment(commission_id, payload.amount, payload.kind, payload.reason, admin.id)

    return _detail_out(await ledger.get_commission_with_adjustments(commission_id))
