from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import JSONType, UTCDateTime, UUIDType


class Product(Base):
    """
    Financial product a marketer can promote, with its commission rules.

    commission_type:
      - percentage: commission_rate required (e.g. 0.05 for 5%)
      - flat: commission_flat_amount required

    tiered_rates (optional) is a list of {"min_amount", "max_amount" (nullable), "rate"};
    when a tier matches the spend it wins over commission_type.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)  # active | inactive

    commission_type: Mapped[str] = mapped_column(String(20), nullable=False, default="percentage")
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    commission_flat_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    min_initial_spend: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))

    tiered_rates: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
