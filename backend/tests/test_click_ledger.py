# tests/test_click_ledger.py
from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.errors import NotFoundError, ValidationError
from app.core.tracking import compute_fingerprint, utcnow, validate_tracking_code
from app.core.roles import UserStatus
from app.services.click_ledger import ClickData, ClickLedger

UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Safari/605.1.15"


@pytest.mark.asyncio
async def test_create_link_is_idempotent_per_marketer_and_product(db, marketer, product):
    ledger = ClickLedger(db)

    first = await ledger.create_referral_link(marketer.id, product.id)
    second = await ledger.create_referral_link(marketer.id, product.id)

    assert first.id == second.id
    assert validate_tracking_code(first.tracking_code)
    assert first.link_url.endswith(f"/api/v1/landing/track/{first.tracking_code}")


@pytest.mark.asyncio
async def test_deactivated_link_is_replaced(db, marketer, product):
    ledger = ClickLedger(db)
    first = await ledger.create_referral_link(marketer.id, product.id)
    await ledger.set_link_active(first.id, marketer.id, False)

    second = await ledger.create_referral_link(marketer.id, product.id)

    assert second.id != first.id
    assert second.is_active is True


@pytest.mark.asyncio
async def test_inactive_marketer_cannot_create_links(db, make_user, product):
    suspended = await make_user(status=UserStatus.SUSPENDED.value)

    with pytest.raises(ValidationError):
        await ClickLedger(db).create_referral_link(suspended.id, product.id)


@pytest.mark.asyncio
async def test_inactive_product_cannot_be_linked(db, marketer, make_product):
    retired = await make_product(status="inactive")

    with pytest.raises(ValidationError):
        await ClickLedger(db).create_referral_link(marketer.id, retired.id)


@pytest.mark.asyncio
async def test_track_click_records_device_and_fingerprint(db, marketer, product):
    ledger = ClickLedger(db)
    link = await ledger.create_referral_link(marketer.id, product.id)

    click = await ledger.track_click(
        ClickData(tracking_code=link.tracking_code, ip_address="10.1.1.1", user_agent=UA, session_id="sess")
    )

    assert click.fingerprint == compute_fingerprint("10.1.1.1", UA, "sess")
    assert (click.device, click.browser, click.os) == ("desktop", "safari", "macos")
    await db.refresh(link)
    assert link.click_count == 1


@pytest.mark.asyncio
async def test_click_on_unknown_or_expired_code_is_not_found(db, marketer, product):
    ledger = ClickLedger(db)
    expired = await ledger.create_referral_link(marketer.id, product.id, expires_at=utcnow() - timedelta(days=1))

    with pytest.raises(NotFoundError):
        await ledger.track_click(ClickData(tracking_code="MISSING", ip_address="1.1.1.1", user_agent=UA, session_id="s"))
    with pytest.raises(NotFoundError):
        await ledger.track_click(
            ClickData(tracking_code=expired.tracking_code, ip_address="1.1.1.1", user_agent=UA, session_id="s")
        )


@pytest.mark.asyncio
async def test_cleanup_expired_links(db, make_user, product):
    ledger = ClickLedger(db)
    owner = await make_user()
    other = await make_user()
    expired = await ledger.create_referral_link(owner.id, product.id, expires_at=utcnow() - timedelta(hours=1))
    live = await ledger.create_referral_link(other.id, product.id, expires_at=utcnow() + timedelta(days=10))

    assert await ledger.cleanup_expired_links() == 1
    assert await ledger.cleanup_expired_links() == 0

    await db.refresh(expired)
    await db.refresh(live)
    assert expired.is_active is False
    assert live.is_active is True


@pytest.mark.asyncio
async def test_find_clicks_requires_exactly_one_signal(db):
    ledger = ClickLedger(db)

    with pytest.raises(ValueError):
        await ledger.find_clicks_matching(since=utcnow(), session_id="s", ip_address="1.1.1.1")
    with pytest.raises(ValueError):
        await ledger.find_clicks_matching(since=utcnow())


@pytest.mark.asyncio
async def test_list_clicks_pages_newest_first(db, marketer, product):
    ledger = ClickLedger(db)
    link = await ledger.create_referral_link(marketer.id, product.id)
    now = utcnow()
    for hours_ago in (3, 2, 1):
        await ledger.track_click(
            ClickData(
                tracking_code=link.tracking_code,
                ip_address="10.0.0.1",
                user_agent="curl/8.0",
                session_id=f"s-{hours_ago}",
                timestamp=now - timedelta(hours=hours_ago),
            )
        )

    rows, total = await ledger.list_clicks(link.tracking_code, limit=2)
    recent, recent_total = await ledger.list_clicks(link.tracking_code, start=now - timedelta(minutes=90))

    assert total == 3
    assert [r.session_id for r in rows] == ["s-1", "s-2"]
    assert recent_total == 1
    assert recent[0].session_id == "s-1"
