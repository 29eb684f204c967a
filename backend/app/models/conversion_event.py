from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import UTCDateTime, UUIDType


class ConversionEvent(Base):
    """
    Financial event log: one row per accepted conversion, never mutated.

    deduplication_key = sha256(customer_id|product_id|YYYY-MM-DD) is UNIQUE;
    it is the authoritative guard against double insertion under concurrency.
    click_event_id is a weak reference (no FK): clicks may be purged independently.
    """

    __tablename__ = "conversion_events"
    __table_args__ = (
        Index("ix_conversion_events_customer_product_ts", "customer_id", "product_id", "conversion_timestamp"),
        Index("ix_conversion_events_tracking_ts", "tracking_code", "conversion_timestamp"),
        CheckConstraint("attribution_window_days BETWEEN 1 AND 90", name="ck_conversion_events_window"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    tracking_code: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    initial_spend_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    conversion_timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)

    # cookie | portal | s2s | none
    attribution_method: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    commission_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    click_event_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType, nullable=True)
    attribution_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    deduplication_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
