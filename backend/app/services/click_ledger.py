"""
Click ledger and referral links.

Owns the append-only click_events table and the referral_links registry that
the attribution resolver reads from.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import InfrastructureError, NotFoundError, ValidationError
from app.core.tracking import compute_fingerprint, generate_tracking_code, parse_user_agent, utcnow
from app.models.click_event import ClickEvent
from app.models.product import Product
from app.models.referral_link import ReferralLink
from app.models.user import ROLE_MARKETER, STATUS_ACTIVE, User

logger = logging.getLogger(__name__)

MAX_CODE_RETRIES = 5


@dataclass
class ClickData:
    tracking_code: str
    ip_address: str
    user_agent: str
    session_id: str
    referrer: Optional[str] = None
    customer_id: Optional[str] = None
    timestamp: Optional[datetime] = None


def _live_link_clause(now: datetime):
    return and_(
        ReferralLink.is_active.is_(True),
        or_(ReferralLink.expires_at.is_(None), ReferralLink.expires_at > now),
    )


class ClickLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Referral links
    # ------------------------------------------------------------------
    async def create_referral_link(
        self,
        marketer_id: uuid.UUID,
        product_id: uuid.UUID,
        expires_at: datetime | None = None,
    ) -> ReferralLink:
        """
        Return the marketer's live link for the product, creating one if needed.
        """
        marketer = await self.db.get(User, marketer_id)
        if marketer is None:
            raise NotFoundError("Marketer not found", marketer_id=str(marketer_id))
        if marketer.status != STATUS_ACTIVE:
            raise ValidationError("Marketer account is not active")
        if marketer.role != ROLE_MARKETER:
            raise ValidationError("User is not a marketer")

        product = await self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found", product_id=str(product_id))
        if product.status != "active":
            raise ValidationError("Product is not active")

        now = utcnow()
        existing = (
            await self.db.execute(
                select(ReferralLink)
                .where(ReferralLink.marketer_id == marketer_id)
                .where(ReferralLink.product_id == product_id)
                .where(_live_link_clause(now))
                .order_by(ReferralLink.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("Returning existing referral link %s for marketer %s", existing.tracking_code, marketer_id)
            return existing

        # collision-safe: pre-check, and the unique index still guards the commit
        for _ in range(MAX_CODE_RETRIES):
            code = generate_tracking_code(marketer_id, product_id)
            taken = (
                await self.db.execute(select(ReferralLink.id).where(ReferralLink.tracking_code == code))
            ).first()
            if not taken:
                break
        else:
            raise InfrastructureError("Could not allocate unique tracking code")

        link = ReferralLink(
            marketer_id=marketer_id,
            product_id=product_id,
            tracking_code=code,
            link_url=f"{settings.BACKEND_URL.rstrip('/')}/api/v1/landing/track/{code}",
            is_active=True,
            expires_at=expires_at,
        )
        self.db.add(link)
        await self._commit("create referral link")
        logger.info("Created referral link %s", code)
        return link

    async def find_active_referral_link(
        self,
        tracking_code: str,
        now: datetime | None = None,
    ) -> ReferralLink | None:
        stmt = (
            select(ReferralLink)
            .where(ReferralLink.tracking_code == tracking_code)
            .where(_live_link_clause(now or utcnow()))
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_referral_link(self, tracking_code: str) -> ReferralLink | None:
        stmt = select(ReferralLink).where(ReferralLink.tracking_code == tracking_code)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def set_link_active(self, link_id: uuid.UUID, marketer_id: uuid.UUID, is_active: bool) -> ReferralLink:
        stmt = select(ReferralLink).where(ReferralLink.id == link_id, ReferralLink.marketer_id == marketer_id)
        link = (await self.db.execute(stmt)).scalar_one_or_none()
        if link is None:
            raise NotFoundError("Referral link not found or access denied")

        link.is_active = is_active
        await self._commit("toggle referral link")
        logger.info("%s referral link %s", "Activated" if is_active else "Deactivated", link.tracking_code)
        return link

    async def cleanup_expired_links(self, now: datetime | None = None) -> int:
        """Deactivate links past their expiry. Returns how many were touched."""
        now = now or utcnow()
        stmt = (
            update(ReferralLink)
            .where(ReferralLink.is_active.is_(True))
            .where(ReferralLink.expires_at.is_not(None))
            .where(ReferralLink.expires_at <= now)
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self._commit("cleanup expired links")
        count = int(result.rowcount or 0)
        logger.info("Deactivated %s expired referral links", count)
        return count

    # ------------------------------------------------------------------
    # Clicks
    # ------------------------------------------------------------------
    async def track_click(self, data: ClickData) -> ClickEvent:
        link = await self.find_active_referral_link(data.tracking_code)
        if link is None:
            raise NotFoundError("Invalid or expired tracking code", tracking_code=data.tracking_code)

        device = parse_user_agent(data.user_agent)
        click = ClickEvent(
            tracking_code=data.tracking_code,
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            referrer=data.referrer,
            session_id=data.session_id,
            customer_id=data.customer_id,
            fingerprint=compute_fingerprint(data.ip_address, data.user_agent, data.session_id),
            device=device.device,
            browser=device.browser,
            os=device.os,
            timestamp=data.timestamp or utcnow(),
        )
        self.db.add(click)
        link.click_count = (link.click_count or 0) + 1

        await self._commit("track click")
        logger.info("Tracked click for tracking code %s, session %s", data.tracking_code, data.session_id)
        return click

    async def find_clicks_matching(
        self,
        *,
        since: datetime,
        until: datetime | None = None,
        session_id: str | None = None,
        fingerprint: str | None = None,
        ip_address: str | None = None,
        limit: int | None = None,
    ) -> list[ClickEvent]:
        """
        Clicks matching exactly one signal in [since, until], newest first.

        Clicks sharing a timestamp are ordered by id, which is random (uuid4):
        stable across calls but not insertion order.
        """
        signals = [
            (ClickEvent.session_id, session_id),
            (ClickEvent.fingerprint, fingerprint),
            (ClickEvent.ip_address, ip_address),
        ]
        given = [(col, val) for col, val in signals if val]
        if len(given) != 1:
            raise ValueError("Provide exactly one of session_id, fingerprint or ip_address")
        column, value = given[0]

        stmt = (
            select(ClickEvent)
            .where(column == value)
            .where(ClickEvent.timestamp >= since)
            .order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc())
        )
        if until is not None:
            stmt = stmt.where(ClickEvent.timestamp <= until)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def find_latest_click(self, **kwargs) -> ClickEvent | None:
        rows = await self.find_clicks_matching(limit=1, **kwargs)
        return rows[0] if rows else None

    async def list_clicks(
        self,
        tracking_code: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ClickEvent], int]:
        conditions = [ClickEvent.tracking_code == tracking_code]
        if start is not None:
            conditions.append(ClickEvent.timestamp >= start)
        if end is not None:
            conditions.append(ClickEvent.timestamp <= end)

        total = await self.db.scalar(select(func.count()).select_from(ClickEvent).where(*conditions))
        rows = (
            await self.db.execute(
                select(ClickEvent)
                .where(*conditions)
                .order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc())
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()
        return list(rows), int(total or 0)

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to %s: %s", action, e)
            raise InfrastructureError(f"Failed to {action}") from e
