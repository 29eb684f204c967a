from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.adjustments import AdjustmentLedger
from app.services.click_ledger import ClickLedger
from app.services.commissions import CommissionService
from app.services.conversions import ConversionRecorder
from app.services.notifications import ConversionNotifier


def get_notifier(request: Request) -> ConversionNotifier | None:
    """Process-wide notifier created in the app lifespan."""
    return getattr(request.app.state, "notifier", None)


async def get_click_ledger(db: AsyncSession = Depends(get_db)) -> ClickLedger:
    return ClickLedger(db)


async def get_conversion_recorder(
    db: AsyncSession = Depends(get_db),
    notifier: ConversionNotifier | None = Depends(get_notifier),
) -> ConversionRecorder:
    return ConversionRecorder(db, notifier=notifier)


async def get_commission_service(db: AsyncSession = Depends(get_db)) -> CommissionService:
    return CommissionService(db)


async def get_adjustment_ledger(db: AsyncSession = Depends(get_db)) -> AdjustmentLedger:
    return AdjustmentLedger(db)
