# app/api/v1/tracking.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from app.api.deps.permissions import require_admin, require_marketer
from app.api.deps.services import get_click_ledger, get_conversion_recorder
from app.models.user import User
from app.schemas.tracking import (
    ClickCreate,
    ClickOut,
    ClicksPageOut,
    ConversionCreate,
    ConversionOut,
    ConversionRecordOut,
    ConversionsPageOut,
    DeduplicationCheckIn,
    DeduplicationOut,
    ReferralLinkCreate,
    ReferralLinkOut,
    ReferralLinkToggle,
)
from app.services.attribution import AttributionCandidate
from app.services.click_ledger import ClickData, ClickLedger
from app.services.conversions import ConversionRecorder

router = APIRouter(prefix="/tracking", tags=["tracking"])


@router.post("/links", response_model=ReferralLinkOut, status_code=status.HTTP_201_CREATED)
async def create_referral_link(
    payload: ReferralLinkCreate,
    marketer: User = Depends(require_marketer),
    ledger: ClickLedger = Depends(get_click_ledger),
):
    """
    Returns the marketer's live link for the product, creating one when none exists.
    """
    link = await ledger.create_referral_link(marketer.id, payload.product_id, expires_at=payload.expires_at)
    return ReferralLinkOut.model_validate(link)


@router.patch("/links/{link_id}", response_model=ReferralLinkOut)
async def toggle_referral_link(
    link_id: uuid.UUID,
    payload: ReferralLinkToggle,
    marketer: User = Depends(require_marketer),
    ledger: ClickLedger = Depends(get_click_ledger),
):
    link = await ledger.set_link_active(link_id, marketer.id, payload.is_active)
    return ReferralLinkOut.model_validate(link)


@router.post("/clicks", response_model=ClickOut, status_code=status.HTTP_201_CREATED)
async def track_click(
    payload: ClickCreate,
    request: Request,
    ledger: ClickLedger = Depends(get_click_ledger),
):
    """
    Public: called by the landing page when a referral link is opened.
    """
    click = await ledger.track_click(
        ClickData(
            tracking_code=payload.tracking_code,
            ip_address=payload.ip_address or (request.client.host if request.client else "unknown"),
            user_agent=payload.user_agent or request.headers.get("user-agent", ""),
            session_id=payload.session_id or uuid.uuid4().hex,
            referrer=payload.referrer or request.headers.get("referer"),
            customer_id=payload.customer_id,
        )
    )
    return ClickOut.model_validate(click)


@router.get("/clicks", response_model=ClicksPageOut)
async def list_clicks(
    tracking_code: str = Query(..., min_length=1),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _admin: User = Depends(require_admin),
    ledger: ClickLedger = Depends(get_click_ledger),
):
    rows, total = await ledger.list_clicks(tracking_code, start=start, end=end, limit=limit, offset=offset)
    return ClicksPageOut(
        items=[ClickOut.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.post(
    "/conversions",
    response_model=ConversionRecordOut,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"description": "Duplicate of an existing conversion"}, 409: {"description": "Already recorded"}},
)
async def record_conversion(
    payload: ConversionCreate,
    response: Response,
    _admin: User = Depends(require_admin),
    recorder: ConversionRecorder = Depends(get_conversion_recorder),
):
    """
    Portal submissions and server-to-server callbacks.

    201 when a new conversion is stored, 200 with is_duplicate when it matches a
    recent one, 409 when the customer/product/day key already exists.
    """
    recorded = await recorder.record_conversion(
        AttributionCandidate(
            customer_id=payload.customer_id,
            product_id=payload.product_id,
            initial_spend_amount=payload.initial_spend_amount,
            tracking_code=payload.tracking_code,
            session_id=payload.session_id,
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            source=payload.attribution_method,
            attribution_window_days=payload.attribution_window_days,
        )
    )

    dedup = recorded.deduplication
    if dedup.is_duplicate:
        response.status_code = status.HTTP_200_OK

    return ConversionRecordOut(
        conversion=ConversionOut.model_validate(recorded.conversion),
        is_duplicate=dedup.is_duplicate,
        duplicate_reason=dedup.reason,
        existing_conversion_id=dedup.existing_conversion_id,
        marketer_id=recorded.attribution.marketer_id if recorded.attribution else None,
    )


@router.get("/conversions", response_model=ConversionsPageOut)
async def list_conversions(
    tracking_code: str = Query(..., min_length=1),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _admin: User = Depends(require_admin),
    recorder: ConversionRecorder = Depends(get_conversion_recorder),
):
    rows, total = await recorder.list_conversions(tracking_code, start=start, end=end, limit=limit, offset=offset)
    return ConversionsPageOut(
        items=[ConversionOut.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.post("/deduplication", response_model=DeduplicationOut)
async def check_deduplication(
    payload: DeduplicationCheckIn,
    _admin: User = Depends(require_admin),
    recorder: ConversionRecorder = Depends(get_conversion_recorder),
):
    result = await recorder.check_deduplication(
        payload.customer_id,
        payload.product_id,
        payload.initial_spend_amount,
    )
    return DeduplicationOut(
        is_duplicate=result.is_duplicate,
        existing_conversion_id=result.existing_conversion_id,
        reason=result.reason,
    )
