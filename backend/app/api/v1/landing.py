# app/api/v1/landing.py
from __future__ import annotations

import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse

from app.api.deps.services import get_click_ledger
from app.core.config import settings
from app.services.click_ledger import ClickData, ClickLedger

router = APIRouter(prefix="/landing", tags=["landing"])

TRACKING_COOKIE = "affiliate_tracking"
SESSION_COOKIE = "affiliate_session"


@router.get("/track/{tracking_code}")
async def follow_referral_link(
    tracking_code: str,
    request: Request,
    ledger: ClickLedger = Depends(get_click_ledger),
):
    """
    Target of every referral link URL.

    Records the click, drops the tracking/session cookies and redirects to
    onboarding with the tracking parameters. 404 if the link is unknown or no longer live.
    """
    session_id = request.cookies.get(SESSION_COOKIE) or uuid.uuid4().hex

    click = await ledger.track_click(
        ClickData(
            tracking_code=tracking_code,
            ip_address=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", "unknown"),
            session_id=session_id,
            referrer=request.headers.get("referer"),
        )
    )
    link = await ledger.get_referral_link(click.tracking_code)

    query = urlencode({"trackingCode": tracking_code, "productId": str(link.product_id), "session": session_id})
    response = RedirectResponse(
        f"{settings.FRONTEND_URL.rstrip('/')}/onboarding?{query}",
        status_code=status.HTTP_302_FOUND,
    )

    cookie_options = {
        "max_age": settings.ATTRIBUTION_WINDOW_DAYS * 24 * 60 * 60,
        "httponly": True,
        "secure": settings.ENVIRONMENT.strip().lower() == "production",
        "samesite": "lax",
    }
    response.set_cookie(TRACKING_COOKIE, tracking_code, **cookie_options)
    response.set_cookie(SESSION_COOKIE, session_id, **cookie_options)
    return response
