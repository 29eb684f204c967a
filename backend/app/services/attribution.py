"""
Attribution resolver.

Priority is strict and the first success wins; signals are never merged:

  1. tracking code supplied (portal / s2s)  -> active referral link, fixed window
  2. session match                          -> most recent click in window
  3. fingerprint match (needs ip + ua)      -> most recent click in window
  4. ip-only match                          -> most recent click in window
  5. nothing                                -> method "none"

The window is a hard cutoff. A cookie match whose referral link is no longer
live is an attribution failure, not an error.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.errors import InfrastructureError, ValidationError
from app.core.tracking import compute_fingerprint, normalize_tracking_code, utcnow
from app.models.click_event import ClickEvent
from app.services.click_ledger import ClickLedger

logger = logging.getLogger(__name__)

METHOD_COOKIE = "cookie"
METHOD_PORTAL = "portal"
METHOD_S2S = "s2s"
METHOD_NONE = "none"

DIRECT_METHODS = (METHOD_PORTAL, METHOD_S2S)

MIN_WINDOW_DAYS = 1
MAX_WINDOW_DAYS = 90


@dataclass
class AttributionCandidate:
    customer_id: str
    product_id: uuid.UUID
    initial_spend_amount: Decimal
    tracking_code: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # portal | s2s; only meaningful when tracking_code is supplied
    source: str = METHOD_PORTAL
    attribution_window_days: Optional[int] = None
    conversion_timestamp: Optional[datetime] = None


@dataclass
class AttributionResult:
    success: bool
    method: str
    window_days: int
    tracking_code: Optional[str] = None
    marketer_id: Optional[uuid.UUID] = None
    click_event_id: Optional[uuid.UUID] = None

    @classmethod
    def unattributed(cls, window_days: int) -> "AttributionResult":
        return cls(success=False, method=METHOD_NONE, window_days=window_days)


def resolve_window_days(requested: int | None, default: int) -> int:
    if requested is None:
        return default
    if not (MIN_WINDOW_DAYS <= requested <= MAX_WINDOW_DAYS):
        raise ValidationError(
            f"Attribution window must be between {MIN_WINDOW_DAYS} and {MAX_WINDOW_DAYS} days",
            attribution_window_days=requested,
        )
    return requested


class AttributionResolver:
    def __init__(self, ledger: ClickLedger, window_days: int | None = None):
        self.ledger = ledger
        self.window_days = window_days or settings.ATTRIBUTION_WINDOW_DAYS

    async def resolve(self, candidate: AttributionCandidate, now: datetime | None = None) -> AttributionResult:
        now = now or candidate.conversion_timestamp or utcnow()
        window_days = resolve_window_days(candidate.attribution_window_days, self.window_days)

        try:
            code = normalize_tracking_code(candidate.tracking_code)
            if code:
                direct = await self._resolve_direct(code, candidate.source, now)
                if direct is not None:
                    return direct

            click, signal = await self._match_click(candidate, now - timedelta(days=window_days), now)
            if click is not None:
                result = await self._from_click(click, window_days, now, signal)
                if result is not None:
                    return result
        except SQLAlchemyError as e:
            logger.error("Attribution lookup failed for customer %s: %s", candidate.customer_id, e)
            raise InfrastructureError("Attribution lookup failed") from e

        logger.info("No attribution for customer %s", candidate.customer_id)
        return AttributionResult.unattributed(window_days)

    async def _resolve_direct(self, code: str, source: str, now: datetime) -> AttributionResult | None:
        link = await self.ledger.find_active_referral_link(code, now=now)
        if link is None:
            logger.info("Tracking code %s has no active referral link", code)
            return None

        method = source if source in DIRECT_METHODS else METHOD_PORTAL
        logger.info("Direct %s attribution to marketer %s via %s", method, link.marketer_id, code)
        return AttributionResult(
            success=True,
            method=method,
            window_days=settings.DIRECT_ATTRIBUTION_WINDOW_DAYS,
            tracking_code=link.tracking_code,
            marketer_id=link.marketer_id,
        )

    async def _match_click(
        self,
        candidate: AttributionCandidate,
        since: datetime,
        until: datetime,
    ) -> tuple[ClickEvent | None, str | None]:
        """First click found by session, then fingerprint, then ip. The best signal wins outright."""
        if candidate.session_id:
            click = await self.ledger.find_latest_click(session_id=candidate.session_id, since=since, until=until)
            if click is not None:
                return click, "session"

        if candidate.ip_address and candidate.user_agent:
            fingerprint = compute_fingerprint(candidate.ip_address, candidate.user_agent, candidate.session_id or "")
            click = await self.ledger.find_latest_click(fingerprint=fingerprint, since=since, until=until)
            if click is not None:
                return click, "fingerprint"

        if candidate.ip_address:
            click = await self.ledger.find_latest_click(ip_address=candidate.ip_address, since=since, until=until)
            if click is not None:
                return click, "ip"

        return None, None

    async def _from_click(
        self,
        click: ClickEvent,
        window_days: int,
        now: datetime,
        signal: str,
    ) -> AttributionResult | None:
        link = await self.ledger.find_active_referral_link(click.tracking_code, now=now)
        if link is None:
            logger.info("Matched click %s by %s but referral link is not live", click.id, signal)
            return None

        logger.info("Cookie attribution by %s to marketer %s via %s", signal, link.marketer_id, click.tracking_code)
        return AttributionResult(
            success=True,
            method=METHOD_COOKIE,
            window_days=window_days,
            tracking_code=click.tracking_code,
            marketer_id=link.marketer_id,
            click_event_id=click.id,
        )
