"""
Duplicate conversion detection.

Two layers:
  - heuristic (advisory, pre-insert): recent conversions for the same customer and
    product, classified in-process by time and amount distance
  - deterministic (authoritative, insert-time): UNIQUE conversion_events.deduplication_key

The heuristic fails open. The unique key is always the backstop.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.tracking import utcnow
from app.models.conversion_event import ConversionEvent

logger = logging.getLogger(__name__)

REASON_SAME_HOUR = "same_customer_product_hour"
REASON_SAME_DAY = "same_customer_product_day"
REASON_KEY = "deduplication_key"


def deduplication_key(customer_id: str, product_id: object, at: datetime) -> str:
    """sha256 of customer|product|YYYY-MM-DD, the date taken in UTC."""
    if at.tzinfo is not None:
        at = at.astimezone(timezone.utc)
    raw = f"{customer_id}|{product_id}|{at.date().isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DeduplicationPolicy:
    lookback: timedelta
    same_day_amount_tolerance: Decimal
    same_hour_window: timedelta
    same_hour_amount_tolerance: Decimal

    @classmethod
    def from_settings(cls) -> "DeduplicationPolicy":
        return cls(
            lookback=timedelta(hours=settings.DEDUP_LOOKBACK_HOURS),
            same_day_amount_tolerance=Decimal(str(settings.DEDUP_SAME_DAY_AMOUNT_TOLERANCE)),
            same_hour_window=timedelta(minutes=settings.DEDUP_SAME_HOUR_WINDOW_MINUTES),
            same_hour_amount_tolerance=Decimal(str(settings.DEDUP_SAME_HOUR_AMOUNT_TOLERANCE)),
        )

    def classify(self, time_diff: timedelta, amount_diff: Decimal) -> str | None:
        same_day = time_diff <= self.lookback and amount_diff <= self.same_day_amount_tolerance
        same_hour = time_diff <= self.same_hour_window and amount_diff <= self.same_hour_amount_tolerance
        if not (same_day or same_hour):
            return None
        return REASON_SAME_HOUR if time_diff <= self.same_hour_window else REASON_SAME_DAY


@dataclass
class DeduplicationResult:
    is_duplicate: bool
    existing_conversion_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None


class DeduplicationChecker:
    def __init__(self, db: AsyncSession, policy: DeduplicationPolicy | None = None):
        self.db = db
        self.policy = policy or DeduplicationPolicy.from_settings()

    async def check_duplicate(
        self,
        customer_id: str,
        product_id: uuid.UUID,
        amount: Decimal,
        at: datetime | None = None,
    ) -> DeduplicationResult:
        at = at or utcnow()
        amount = Decimal(str(amount))

        try:
            rows = (
                await self.db.execute(
                    select(ConversionEvent)
                    .where(ConversionEvent.customer_id == customer_id)
                    .where(ConversionEvent.product_id == product_id)
                    .where(ConversionEvent.conversion_timestamp >= at - self.policy.lookback)
                    .order_by(ConversionEvent.conversion_timestamp.desc(), ConversionEvent.id.desc())
                )
            ).scalars().all()
        except SQLAlchemyError as e:
            # fail open: the unique deduplication_key still rejects same-day inserts.
            # A failed statement aborts the transaction on PostgreSQL, so clear it before
            # the caller keeps using the session.
            logger.warning("Deduplication check unavailable for customer %s, allowing: %s", customer_id, e)
            await self.db.rollback()
            return DeduplicationResult(is_duplicate=False)

        for existing in rows:
            time_diff = abs(at - existing.conversion_timestamp)
            amount_diff = abs(Decimal(existing.initial_spend_amount) - amount)
            reason = self.policy.classify(time_diff, amount_diff)
            if reason is not None:
                logger.warning(
                    "Duplicate conversion detected for customer %s, product %s: %s (existing %s)",
                    customer_id,
                    product_id,
                    reason,
                    existing.id,
                )
                return DeduplicationResult(is_duplicate=True, existing_conversion_id=existing.id, reason=reason)

        return DeduplicationResult(is_duplicate=False)
