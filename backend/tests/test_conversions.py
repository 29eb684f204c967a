# tests/test_conversions.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from sqlalchemy.exc import OperationalError

from app.core.errors import DuplicateError
from app.services.attribution import AttributionCandidate
from app.services.click_ledger import ClickData, ClickLedger
from app.services.conversions import UNKNOWN_TRACKING_CODE, ConversionRecorder
from app.services.deduplication import REASON_SAME_HOUR

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
UA = "Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"


def candidate(product_id, at: datetime = T0, amount: str = "1000", **kwargs) -> AttributionCandidate:
    return AttributionCandidate(
        customer_id="c1",
        product_id=product_id,
        initial_spend_amount=Decimal(amount),
        conversion_timestamp=at,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_second_submission_five_minutes_later_is_duplicate(db, product):
    recorder = ConversionRecorder(db)

    first = await recorder.record_conversion(candidate(product.id))
    second = await recorder.record_conversion(candidate(product.id, at=T0 + timedelta(minutes=5)))

    assert first.created is True
    assert second.created is False
    assert second.deduplication.is_duplicate is True
    assert second.deduplication.reason == REASON_SAME_HOUR
    assert second.conversion.id == first.conversion.id


@pytest.mark.asyncio
async def test_same_day_key_conflict_raises_duplicate_error(db, product):
    recorder = ConversionRecorder(db)
    await recorder.record_conversion(candidate(product.id, amount="1000"))

    # heuristics do not match (3h apart, 500 apart) but the UTC day key does
    with pytest.raises(DuplicateError) as exc:
        await recorder.record_conversion(candidate(product.id, at=T0 + timedelta(hours=3), amount="1500"))

    assert exc.value.context["reason"] == "deduplication_key"
    rows, total = await recorder.list_conversions(UNKNOWN_TRACKING_CODE)
    assert total == 1


@pytest.mark.asyncio
async def test_next_utc_day_is_a_new_conversion(db, product):
    recorder = ConversionRecorder(db)
    await recorder.record_conversion(candidate(product.id, at=datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)))

    later = await recorder.record_conversion(
        candidate(product.id, at=datetime(2026, 3, 2, 1, 30, tzinfo=timezone.utc), amount="2500")
    )

    assert later.created is True


@pytest.mark.asyncio
async def test_unattributed_conversion_is_stored_but_not_eligible(db, product, notifier):
    received = []
    notifier.on_eligible_conversion(lambda event: received.append(event))

    recorded = await ConversionRecorder(db, notifier=notifier).record_conversion(candidate(product.id))
    await notifier.drain()

    conversion = recorded.conversion
    assert conversion.tracking_code == UNKNOWN_TRACKING_CODE
    assert conversion.attribution_method == "none"
    assert conversion.commission_eligible is False
    assert received == []


@pytest.mark.asyncio
async def test_attributed_conversion_counts_and_notifies(db, marketer, product, notifier):
    ledger = ClickLedger(db)
    link = await ledger.create_referral_link(marketer.id, product.id)
    click = await ledger.track_click(
        ClickData(
            tracking_code=link.tracking_code,
            ip_address="10.0.0.7",
            user_agent=UA,
            session_id="sess-7",
            timestamp=T0 - timedelta(days=1),
        )
    )
    received = []
    notifier.on_eligible_conversion(lambda event: received.append(event))

    recorded = await ConversionRecorder(db, notifier=notifier).record_conversion(
        candidate(product.id, session_id="sess-7", ip_address="10.0.0.7", user_agent=UA)
    )
    await notifier.drain()

    conversion = recorded.conversion
    assert conversion.attribution_method == "cookie"
    assert conversion.commission_eligible is True
    assert conversion.click_event_id == click.id
    assert conversion.tracking_code == link.tracking_code
    assert conversion.fingerprint is not None
    assert recorded.attribution.marketer_id == marketer.id

    await db.refresh(link)
    assert link.conversion_count == 1

    assert len(received) == 1
    assert received[0].conversion_id == conversion.id
    assert received[0].marketer_id == marketer.id


@pytest.mark.asyncio
async def test_list_conversions_by_tracking_code(db, marketer, product):
    link = await ClickLedger(db).create_referral_link(marketer.id, product.id)
    recorder = ConversionRecorder(db)
    for day in range(3):
        await recorder.record_conversion(
            AttributionCandidate(
                customer_id=f"c{day}",
                product_id=product.id,
                initial_spend_amount=Decimal("100"),
                tracking_code=link.tracking_code,
                conversion_timestamp=T0 + timedelta(days=day),
            )
        )

    rows, total = await recorder.list_conversions(link.tracking_code, limit=2)

    assert total == 3
    assert [r.customer_id for r in rows] == ["c2", "c1"]
    assert all(r.attribution_method == "portal" for r in rows)


@pytest.mark.asyncio
async def test_failed_duplicate_check_still_records_conversion(db, marketer, product, monkeypatch):
    link = await ClickLedger(db).create_referral_link(marketer.id, product.id)
    marketer_id, product_id, tracking_code = marketer.id, product.id, link.tracking_code

    execute = db.execute
    rollback = db.rollback
    calls = {"execute": 0, "rollback": 0}

    async def first_statement_fails(*args, **kwargs):
        calls["execute"] += 1
        if calls["execute"] == 1:
            raise OperationalError("SELECT conversion_events", {}, Exception("statement timeout"))
        return await execute(*args, **kwargs)

    async def counting_rollback():
        calls["rollback"] += 1
        await rollback()

    monkeypatch.setattr(db, "execute", first_statement_fails)
    monkeypatch.setattr(db, "rollback", counting_rollback)

    recorded = await ConversionRecorder(db).record_conversion(
        candidate(product_id, tracking_code=tracking_code, source="s2s")
    )

    assert calls["rollback"] == 1
    assert recorded.created is True
    assert recorded.attribution.marketer_id == marketer_id
    assert recorded.conversion.tracking_code == tracking_code
    assert recorded.conversion.commission_eligible is True
    assert recorded.conversion.attribution_method == "s2s"
