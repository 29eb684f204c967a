# app/schemas/commissions.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CommissionCalculateIn(BaseModel):
    product_id: uuid.UUID
    initial_spend_amount: Decimal = Field(ge=0)
    custom_rate: Optional[Decimal] = Field(default=None, ge=0)
    custom_amount: Optional[Decimal] = Field(default=None, ge=0)
    override_product_rules: bool = False


class CommissionQuoteOut(BaseModel):
    commission_amount: Decimal
    commission_rate: Decimal


class CommissionCreateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    marketer_id: uuid.UUID
    customer_id: str = Field(min_length=1, max_length=128)
    product_id: uuid.UUID
    tracking_code: str = Field(min_length=1, max_length=64)
    initial_spend_amount: Decimal = Field(ge=0)

    conversion_date: Optional[datetime] = None
    clearance_period_days: Optional[int] = Field(default=None, ge=0, le=365)

    custom_rate: Optional[Decimal] = Field(default=None, ge=0)
    custom_amount: Optional[Decimal] = Field(default=None, ge=0)
    override_product_rules: bool = False


class CommissionFromConversionIn(BaseModel):
    conversion_id: uuid.UUID
    marketer_id: Optional[uuid.UUID] = None


class CommissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    marketer_id: uuid.UUID
    customer_id: str
    product_id: uuid.UUID
    tracking_code: str

    initial_spend_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: str

    conversion_date: datetime
    approval_date: Optional[datetime] = None
    clearance_period_days: int
    eligible_for_payout_date: datetime

    created_at: datetime
    updated_at: datetime


class CommissionsPageOut(BaseModel):
    items: List[CommissionOut]
    page: int
    limit: int
    total: int


class CommissionTransitionIn(BaseModel):
    action: Literal["approve", "reject", "mark_paid", "claw_back"]
    reason: Optional[str] = Field(default=None, max_length=2000)

    # approve
    override_clearance: bool = False
    # mark_paid
    payment_reference: Optional[str] = Field(default=None, max_length=128)
    # claw_back (defaults to the full commission amount)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    clawback_type: Literal["refund", "chargeback", "manual"] = "manual"


class CommissionRecalculateIn(BaseModel):
    commission_amount: Optional[Decimal] = Field(default=None, ge=0)
    commission_rate: Optional[Decimal] = Field(default=None, ge=0)


class CommissionAdjustmentIn(BaseModel):
    kind: Literal["bonus", "correction", "clawback", "partial_clawback"]
    amount: Decimal
    reason: str = Field(min_length=1, max_length=2000)
    clawback_type: Literal["refund", "chargeback", "manual"] = "manual"


class AdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    commission_id: uuid.UUID
    adjustment_type: str
    amount: Decimal
    reason: str
    clawback_type: Optional[str] = None
    reference: Optional[str] = None
    admin_id: Optional[uuid.UUID] = None
    created_at: datetime


class CommissionDetailOut(BaseModel):
    commission: CommissionOut
    adjustments: List[AdjustmentOut]
    total_adjustments: Decimal
    net_amount: Decimal


class BulkApproveOut(BaseModel):
    approved: int
    skipped: int
    errors: List[str] = Field(default_factory=list)


class StatusHistoryEntry(BaseModel):
    status: str
    timestamp: datetime
    admin_id: Optional[uuid.UUID] = None
    reason: str


class CommissionSummaryOut(BaseModel):
    total_earned: Decimal
    pending_amount: Decimal
    approved_amount: Decimal
    paid_amount: Decimal
    clawed_back_amount: Decimal
    total_commissions: int
    available_balance: Decimal


class ClawbackStatsOut(BaseModel):
    total_clawbacks: int
    total_clawback_amount: Decimal
    clawbacks_by_type: Dict[str, Dict[str, Any]]
    affected_commissions: int
    total_commissions: int
    clawback_rate: float
