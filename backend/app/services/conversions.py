"""
Conversion recording: dedup check -> attribution -> insert -> post-commit notify.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateError, InfrastructureError
from app.core.tracking import compute_fingerprint, utcnow
from app.models.conversion_event import ConversionEvent
from app.models.referral_link import ReferralLink
from app.services.attribution import AttributionCandidate, AttributionResolver, AttributionResult
from app.services.click_ledger import ClickLedger
from app.services.deduplication import (
    REASON_KEY,
    DeduplicationChecker,
    DeduplicationResult,
    deduplication_key,
)
from app.services.notifications import ConversionNotification, ConversionNotifier

logger = logging.getLogger(__name__)

UNKNOWN_TRACKING_CODE = "UNKNOWN"


@dataclass
class RecordedConversion:
    conversion: ConversionEvent
    deduplication: DeduplicationResult
    attribution: AttributionResult | None = None

    @property
    def created(self) -> bool:
        return not self.deduplication.is_duplicate


class ConversionRecorder:
    def __init__(
        self,
        db: AsyncSession,
        notifier: ConversionNotifier | None = None,
        resolver: AttributionResolver | None = None,
        checker: DeduplicationChecker | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.resolver = resolver or AttributionResolver(ClickLedger(db))
        self.checker = checker or DeduplicationChecker(db)

    async def check_deduplication(
        self,
        customer_id: str,
        product_id: uuid.UUID,
        amount: Decimal,
        at: datetime | None = None,
    ) -> DeduplicationResult:
        return await self.checker.check_duplicate(customer_id, product_id, amount, at=at)

    async def record_conversion(self, candidate: AttributionCandidate) -> RecordedConversion:
        at = candidate.conversion_timestamp or utcnow()

        dedup = await self.checker.check_duplicate(
            candidate.customer_id,
            candidate.product_id,
            candidate.initial_spend_amount,
            at=at,
        )
        if dedup.is_duplicate and dedup.existing_conversion_id is not None:
            existing = await self.db.get(ConversionEvent, dedup.existing_conversion_id)
            if existing is not None:
                return RecordedConversion(conversion=existing, deduplication=dedup)

        attribution = await self.resolver.resolve(candidate, now=at)

        fingerprint = None
        if candidate.ip_address and candidate.user_agent:
            fingerprint = compute_fingerprint(candidate.ip_address, candidate.user_agent, candidate.session_id or "")

        conversion = ConversionEvent(
            tracking_code=attribution.tracking_code or candidate.tracking_code or UNKNOWN_TRACKING_CODE,
            customer_id=candidate.customer_id,
            product_id=candidate.product_id,
            initial_spend_amount=Decimal(str(candidate.initial_spend_amount)),
            conversion_timestamp=at,
            attribution_method=attribution.method,
            commission_eligible=attribution.success,
            session_id=candidate.session_id,
            fingerprint=fingerprint,
            ip_address=candidate.ip_address,
            user_agent=candidate.user_agent,
            click_event_id=attribution.click_event_id,
            attribution_window_days=attribution.window_days,
            deduplication_key=deduplication_key(candidate.customer_id, candidate.product_id, at),
        )
        self.db.add(conversion)

        link = None
        if attribution.success and attribution.tracking_code:
            link = (
                await self.db.execute(
                    select(ReferralLink).where(ReferralLink.tracking_code == attribution.tracking_code)
                )
            ).scalar_one_or_none()
            if link is not None:
                link.conversion_count = (link.conversion_count or 0) + 1

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(
                "Conversion already recorded for customer %s, product %s on %s",
                candidate.customer_id,
                candidate.product_id,
                at.date().isoformat(),
            )
            raise DuplicateError(
                "Conversion already recorded for this customer and product today",
                reason=REASON_KEY,
                customer_id=candidate.customer_id,
                product_id=str(candidate.product_id),
            ) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to record conversion for customer %s: %s", candidate.customer_id, e)
            raise InfrastructureError("Failed to record conversion") from e

        logger.info(
            "Recorded conversion for customer %s, amount %s, eligible %s",
            conversion.customer_id,
            conversion.initial_spend_amount,
            conversion.commission_eligible,
        )

        self._after_commit(conversion, link)
        return RecordedConversion(
            conversion=conversion,
            deduplication=DeduplicationResult(is_duplicate=False),
            attribution=attribution,
        )

    def _after_commit(self, conversion: ConversionEvent, link: ReferralLink | None) -> None:
        if not conversion.commission_eligible or link is None or self.notifier is None:
            return
        try:
            self.notifier.publish(
                ConversionNotification(
                    conversion_id=conversion.id,
                    customer_id=conversion.customer_id,
                    marketer_id=link.marketer_id,
                    product_id=conversion.product_id,
                    tracking_code=conversion.tracking_code,
                    initial_spend_amount=conversion.initial_spend_amount,
                    attribution_method=conversion.attribution_method,
                    commission_eligible=conversion.commission_eligible,
                    timestamp=conversion.conversion_timestamp,
                )
            )
        except Exception:
            logger.exception("Failed to publish notification for conversion %s", conversion.id)

    async def get_conversion(self, conversion_id: uuid.UUID) -> ConversionEvent | None:
        return await self.db.get(ConversionEvent, conversion_id)

    async def list_conversions(
        self,
        tracking_code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ConversionEvent], int]:
        conditions = [ConversionEvent.tracking_code == tracking_code]
        if start is not None:
            conditions.append(ConversionEvent.conversion_timestamp >= start)
        if end is not None:
            conditions.append(ConversionEvent.conversion_timestamp <= end)

        total = await self.db.scalar(select(func.count()).select_from(ConversionEvent).where(*conditions))
        rows = (
            await self.db.execute(
                select(ConversionEvent)
                .where(*conditions)
                .order_by(ConversionEvent.conversion_timestamp.desc())
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()
        return list(rows), int(total or 0)
