from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import UTCDateTime, UUIDType

ADJUSTMENT_CORRECTION = "correction"
ADJUSTMENT_BONUS = "bonus"
ADJUSTMENT_PAYMENT = "payment"
ADJUSTMENT_CLAWBACK = "clawback"
ADJUSTMENT_STATUS_CHANGE = "status_change"

ADJUSTMENT_TYPES = (
    ADJUSTMENT_CORRECTION,
    ADJUSTMENT_BONUS,
    ADJUSTMENT_PAYMENT,
    ADJUSTMENT_CLAWBACK,
    ADJUSTMENT_STATUS_CHANGE,
)

CLAWBACK_TYPES = ("refund", "chargeback", "manual")


class CommissionAdjustment(Base):
    """
    Append-only audit trail for a commission. Never updated or deleted.

    amount is signed: clawbacks are negative, status changes are zero.
    admin_id is NULL for system-driven entries (scheduled auto-approval).
    """

    __tablename__ = "commission_adjustments"
    __table_args__ = (
        Index("ix_commission_adjustments_commission_created", "commission_id", "created_at"),
        Index("ix_commission_adjustments_type_created", "adjustment_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    commission_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("commissions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # correction | bonus | payment | clawback | status_change
    adjustment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    # refund | chargeback | manual (clawback entries only)
    clawback_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    # payment reference (payment entries only)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    admin_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
