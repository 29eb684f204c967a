from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import UTCDateTime, UUIDType


class Commission(Base):
    """
    Money owed to a marketer for one attributed conversion.

    Stores:
      - initial_spend_amount (what the customer spent)
      - commission_rate / commission_amount (calculated at creation, or on recalculation while pending)
      - status: pending | approved | rejected | paid | clawed_back (forward-only, see commission_state_machine)
      - eligible_for_payout_date = conversion_date + clearance_period_days

    NOTE:
      - Exactly one row per (customer_id, product_id, tracking_code).
      - What is actually owed is commission_amount plus the adjustment ledger,
        computed on read (see app.services.adjustments.net_amount).
    """

    __tablename__ = "commissions"
    __table_args__ = (
        UniqueConstraint("customer_id", "product_id", "tracking_code", name="uq_commissions_customer_product_tracking"),
        Index("ix_commissions_marketer_status", "marketer_id", "status"),
        Index("ix_commissions_status_eligible", "status", "eligible_for_payout_date"),
        Index("ix_commissions_marketer_conversion", "marketer_id", "conversion_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    marketer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    tracking_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    initial_spend_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    conversion_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    approval_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    clearance_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    eligible_for_payout_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
