# app/schemas/tracking.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReferralLinkCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: uuid.UUID
    expires_at: Optional[datetime] = None


class ReferralLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    marketer_id: uuid.UUID
    product_id: uuid.UUID
    tracking_code: str
    link_url: str
    is_active: bool
    expires_at: Optional[datetime] = None
    click_count: int
    conversion_count: int
    created_at: datetime


class ReferralLinkToggle(BaseModel):
    is_active: bool


class ClickCreate(BaseModel):
    """
    ip_address / user_agent default to the request's client address and
    User-Agent header when omitted.
    """

    tracking_code: str = Field(min_length=1, max_length=64)
    session_id: Optional[str] = Field(default=None, max_length=128)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    customer_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("tracking_code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.strip()


class ClickOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tracking_code: str
    session_id: str
    fingerprint: str
    device: str
    browser: str
    os: str
    timestamp: datetime


class ClicksPageOut(BaseModel):
    items: List[ClickOut]
    limit: int
    offset: int
    total: int


class ConversionCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)
    product_id: uuid.UUID
    initial_spend_amount: Decimal = Field(ge=0)

    tracking_code: Optional[str] = Field(default=None, max_length=64)
    # how a supplied tracking_code reached us
    attribution_method: Literal["portal", "s2s"] = "portal"

    session_id: Optional[str] = Field(default=None, max_length=128)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = None

    attribution_window_days: Optional[int] = Field(default=None, ge=1, le=90)


class ConversionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tracking_code: str
    customer_id: str
    product_id: uuid.UUID
    initial_spend_amount: Decimal
    conversion_timestamp: datetime
    attribution_method: str
    commission_eligible: bool
    click_event_id: Optional[uuid.UUID] = None
    attribution_window_days: int


class ConversionRecordOut(BaseModel):
    conversion: ConversionOut
    is_duplicate: bool
    duplicate_reason: Optional[str] = None
    existing_conversion_id: Optional[uuid.UUID] = None
    marketer_id: Optional[uuid.UUID] = None


class ConversionsPageOut(BaseModel):
    items: List[ConversionOut]
    limit: int
    offset: int
    total: int


class DeduplicationCheckIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)
    product_id: uuid.UUID
    initial_spend_amount: Decimal = Field(ge=0)


class DeduplicationOut(BaseModel):
    is_duplicate: bool
    existing_conversion_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
