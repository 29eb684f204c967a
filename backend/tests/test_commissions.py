# tests/test_commissions.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.errors import DuplicateError, InvalidTransitionError, NotFoundError, ValidationError
from app.core.roles import UserStatus
from app.models.commission import Commission
from app.models.commission_adjustment import CommissionAdjustment
from app.services.attribution import AttributionCandidate
from app.services.commissions import CommissionCreate, CommissionFilters, CommissionService
from app.services.conversions import ConversionRecorder

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def service_at(db, now: datetime = NOW) -> CommissionService:
    return CommissionService(db, now_fn=lambda: now)


async def new_commission(
    service: CommissionService,
    marketer_id: uuid.UUID,
    product_id: uuid.UUID,
    customer_id: str = "cust-1",
    spend: str = "2000",
    **kwargs,
):
    return await service.create_commission(
        CommissionCreate(
            marketer_id=marketer_id,
            customer_id=customer_id,
            product_id=product_id,
            tracking_code="CODE-1",
            initial_spend_amount=Decimal(spend),
            **kwargs,
        )
    )


async def adjustments_for(db, commission_id) -> list[CommissionAdjustment]:
    rows = await db.execute(
        select(CommissionAdjustment)
        .where(CommissionAdjustment.commission_id == commission_id)
        .order_by(CommissionAdjustment.created_at.asc())
    )
    return list(rows.scalars().all())


# -------------------------
# Creation
# -------------------------
@pytest.mark.asyncio
async def test_create_commission_applies_product_rules_and_clearance(db, marketer, product):
    commission = await new_commission(service_at(db), marketer.id, product.id)

    assert commission.status == "pending"
    assert commission.commission_amount == Decimal("100")
    assert commission.commission_rate == Decimal("0.05")
    assert commission.conversion_date == NOW
    assert commission.clearance_period_days == 30
    assert commission.eligible_for_payout_date == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_spend_below_product_minimum_is_rejected(db, marketer, make_product):
    product = await make_product(min_initial_spend="1000")
    marketer_id, product_id = marketer.id, product.id

    with pytest.raises(ValidationError) as exc:
        await new_commission(service_at(db), marketer_id, product_id, spend="500")

    assert "below minimum required 1000" in exc.value.message


@pytest.mark.asyncio
async def test_override_bypasses_minimum_and_rules(db, marketer, make_product):
    product = await make_product(min_initial_spend="1000")

    commission = await new_commission(
        service_at(db),
        marketer.id,
        product.id,
        spend="500",
        custom_amount=Decimal("40"),
        override_product_rules=True,
    )

    assert commission.commission_amount == Decimal("40")
    assert commission.commission_rate == Decimal("0.08")


@pytest.mark.asyncio
async def test_one_commission_per_customer_product_tracking_code(db, marketer, product):
    service = service_at(db)
    marketer_id, product_id = marketer.id, product.id
    await new_commission(service, marketer_id, product_id)

    with pytest.raises(DuplicateError) as exc:
        await new_commission(service, marketer_id, product_id)

    assert exc.value.message == "Commission already exists for this customer and product combination"


@pytest.mark.asyncio
async def test_inactive_marketer_and_unknown_product(db, make_user, product):
    suspended = await make_user(status=UserStatus.SUSPENDED.value)
    suspended_id, product_id = suspended.id, product.id
    service = service_at(db)

    with pytest.raises(ValidationError) as exc:
        await new_commission(service, suspended_id, product_id)
    assert exc.value.message == "Invalid or inactive marketer"

    with pytest.raises(NotFoundError):
        await new_commission(service, uuid.uuid4(), product_id)


@pytest.mark.asyncio
async def test_misconfigured_product_is_configuration_error(db, marketer, make_product):
    from app.core.errors import ConfigurationError

    broken = await make_product(commission_type="flat", commission_rate=None, commission_flat_amount=None)
    marketer_id, product_id = marketer.id, broken.id

    with pytest.raises(ConfigurationError):
        await new_commission(service_at(db), marketer_id, product_id)


@pytest.mark.asyncio
async def test_create_for_conversion_uses_link_owner(db, marketer, product):
    from app.services.click_ledger import ClickLedger

    link = await ClickLedger(db).create_referral_link(marketer.id, product.id)
    recorded = await ConversionRecorder(db).record_conversion(
        AttributionCandidate(
            customer_id="cust-9",
            product_id=product.id,
            initial_spend_amount=Decimal("3000"),
            tracking_code=link.tracking_code,
            conversion_timestamp=NOW - timedelta(days=1),
        )
    )

    commission = await service_at(db).create_for_conversion(recorded.conversion.id)

    assert commission.marketer_id == marketer.id
    assert commission.tracking_code == link.tracking_code
    assert commission.commission_amount == Decimal("150")
    assert commission.conversion_date == NOW - timedelta(days=1)


@pytest.mark.asyncio
async def test_create_for_ineligible_conversion_is_rejected(db, product):
    recorded = await ConversionRecorder(db).record_conversion(
        AttributionCandidate(customer_id="anon", product_id=product.id, initial_spend_amount=Decimal("10"))
    )
    conversion_id = recorded.conversion.id

    with pytest.raises(ValidationError):
        await service_at(db).create_for_conversion(conversion_id)


# -------------------------
# Lifecycle
# -------------------------
@pytest.mark.asyncio
async def test_approval_waits_for_clearance_unless_overridden(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    commission_id, admin_id = commission.id, admin.id

    with pytest.raises(ValidationError):
        await service.approve(commission_id, admin_id)

    approved = await service.approve(commission_id, admin_id, override_clearance=True)

    assert approved.status == "approved"
    assert approved.approval_date == NOW


@pytest.mark.asyncio
async def test_full_lifecycle_writes_status_history(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(
        service, marketer.id, product.id, conversion_date=NOW - timedelta(days=45)
    )

    await service.approve(commission.id, admin.id)
    paid = await service.mark_paid(commission.id, admin.id, payment_reference="PAY-001")

    assert paid.status == "paid"
    history = await service.get_status_history(commission.id)
    assert [h["status"] for h in history] == ["pending", "approved", "paid"]
    assert history[1]["admin_id"] == admin.id

    entries = await adjustments_for(db, commission.id)
    payment = [e for e in entries if e.adjustment_type == "payment"]
    assert len(payment) == 1
    assert payment[0].reference == "PAY-001"
    assert payment[0].reason == "Payment processed - Reference: PAY-001"


@pytest.mark.asyncio
async def test_reject_requires_reason_and_is_terminal(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    commission_id, admin_id = commission.id, admin.id

    with pytest.raises(ValidationError) as exc:
        await service.reject(commission_id, "   ", admin_id)
    assert exc.value.message == "Rejection reason is required"

    rejected = await service.reject(commission_id, "Fraudulent signup", admin_id)
    assert rejected.status == "rejected"

    with pytest.raises(InvalidTransitionError):
        await service.approve(commission_id, admin_id, override_clearance=True)

    entries = await adjustments_for(db, commission_id)
    assert entries[-1].reason == "Status changed from pending to rejected: Fraudulent signup"


@pytest.mark.asyncio
async def test_mark_paid_requires_approved(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    commission_id, admin_id = commission.id, admin.id

    with pytest.raises(InvalidTransitionError) as exc:
        await service.mark_paid(commission_id, admin_id)

    assert exc.value.current == "pending"
    assert exc.value.target == "paid"


@pytest.mark.asyncio
async def test_update_status_rejects_same_state(db, marketer, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    commission_id = commission.id

    with pytest.raises(InvalidTransitionError):
        await service.update_status(commission_id, "pending")

    updated = await service.update_status(commission_id, "clawed_back", reason="Account closed")
    assert updated.status == "clawed_back"


@pytest.mark.asyncio
async def test_recalculate_pending_records_signed_correction(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)

    updated = await service.recalculate(commission.id, new_amount=Decimal("80"), admin_id=admin.id)

    assert updated.commission_amount == Decimal("80")
    assert updated.commission_rate == Decimal("0.04")
    corrections = [e for e in await adjustments_for(db, commission.id) if e.adjustment_type == "correction"]
    assert len(corrections) == 1
    assert corrections[0].amount == Decimal("-20")
    assert corrections[0].reason == "Manual recalculation"


@pytest.mark.asyncio
async def test_recalculate_only_while_pending(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    commission_id, admin_id = commission.id, admin.id
    await service.approve(commission_id, admin_id, override_clearance=True)

    with pytest.raises(ValidationError) as exc:
        await service.recalculate(commission_id, new_rate=Decimal("0.1"), admin_id=admin_id)

    assert exc.value.message == "Only pending commissions can be recalculated"


@pytest.mark.asyncio
async def test_transition_claw_back_defaults_to_full_amount(db, marketer, admin, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)
    await service.approve(commission.id, admin.id, override_clearance=True)

    clawed = await service.transition(commission.id, "claw_back", admin.id, reason="Refunded", clawback_type="refund")

    assert clawed.status == "clawed_back"
    clawbacks = [e for e in await adjustments_for(db, commission.id) if e.adjustment_type == "clawback"]
    assert clawbacks[0].amount == Decimal("-100")
    assert clawbacks[0].reason == "REFUND clawback: Refunded"


@pytest.mark.asyncio
async def test_unknown_transition_action(db, marketer, product):
    service = service_at(db)
    commission = await new_commission(service, marketer.id, product.id)

    with pytest.raises(ValidationError):
        await service.transition(commission.id, "archive", None)


# -------------------------
# Bulk approval + reads
# -------------------------
@pytest.mark.asyncio
async def test_bulk_approval_is_idempotent(db, marketer, product):
    service = service_at(db)
    for i, age in enumerate((40, 31, 5)):
        await new_commission(
            service,
            marketer.id,
            product.id,
            customer_id=f"cust-{i}",
            conversion_date=NOW - timedelta(days=age),
        )

    first = await service.bulk_approve_eligible()
    second = await service.bulk_approve_eligible()

    assert (first.approved, first.errors) == (2, [])
    assert second.approved == 0
    rows, total = await service.list_commissions(CommissionFilters(status="approved"))
    assert total == 2
    assert all(r.approval_date == NOW for r in rows)

    history = await service.get_status_history(rows[0].id)
    assert history[-1]["admin_id"] is None


@pytest.mark.asyncio
async def test_bulk_approval_isolates_a_failing_commission(db, marketer, product, monkeypatch):
    service = service_at(db)
    ids = []
    for i, age in enumerate((40, 35, 31)):
        commission = await new_commission(
            service,
            marketer.id,
            product.id,
            customer_id=f"cust-{i}",
            conversion_date=NOW - timedelta(days=age),
        )
        ids.append(commission.id)
    failing_id = ids[1]

    record_status_change = service._record_status_change

    def fail_for_one(commission, new_status, admin_id, reason=None, at=None):
        if commission.id == failing_id:
            raise OperationalError("UPDATE commissions", {}, Exception("lock timeout"))
        return record_status_change(commission, new_status, admin_id, reason, at=at)

    monkeypatch.setattr(service, "_record_status_change", fail_for_one)

    result = await service.bulk_approve_eligible()

    assert result.approved == 2
    assert result.skipped == 0
    assert len(result.errors) == 1
    assert str(failing_id) in result.errors[0]
    statuses = {}
    for cid in ids:
        statuses[cid] = (await db.get(Commission, cid, populate_existing=True)).status
    assert statuses == {ids[0]: "approved", ids[1]: "pending", ids[2]: "approved"}


@pytest.mark.asyncio
async def test_bulk_approval_stamps_the_run_time(db, marketer, product):
    service = service_at(db)
    await new_commission(service, marketer.id, product.id, conversion_date=NOW - timedelta(days=25))
    run_at = NOW + timedelta(days=10)

    result = await service.bulk_approve_eligible(now=run_at)

    assert result.approved == 1
    rows, _ = await service.list_commissions(CommissionFilters(status="approved"))
    assert rows[0].approval_date == run_at


@pytest.mark.asyncio
async def test_list_commissions_filters_and_paginates(db, make_user, product):
    service = service_at(db)
    first = await make_user()
    second = await make_user()
    for i in range(3):
        await new_commission(service, first.id, product.id, customer_id=f"a-{i}", spend=str(1000 * (i + 1)))
    await new_commission(service, second.id, product.id, customer_id="b-0")

    rows, total = await service.list_commissions(CommissionFilters(marketer_id=first.id), page=1, limit=2)
    assert total == 3
    assert len(rows) == 2

    rows, total = await service.list_commissions(CommissionFilters(min_amount=Decimal("100")))
    assert total == 3


@pytest.mark.asyncio
async def test_summary_and_available_balance(db, marketer, admin, product):
    service = service_at(db)
    a = await new_commission(service, marketer.id, product.id, customer_id="a")               # 100
    b = await new_commission(service, marketer.id, product.id, customer_id="b", spend="4000")  # 200
    await new_commission(service, marketer.id, product.id, customer_id="c", spend="1000")      # 50
    await service.approve(a.id, admin.id, override_clearance=True)
    await service.approve(b.id, admin.id, override_clearance=True)
    await service.mark_paid(b.id, admin.id)

    summary = await service.get_commission_summary(marketer.id)

    assert summary["pending_amount"] == Decimal("50")
    assert summary["approved_amount"] == Decimal("100")
    assert summary["paid_amount"] == Decimal("200")
    assert summary["total_earned"] == Decimal("350")
    assert summary["total_commissions"] == 3
    assert await service.get_available_balance(marketer.id) == Decimal("100")


@pytest.mark.asyncio
async def test_lifecycle_stats(db, marketer, admin, product):
    service = service_at(db)
    a = await new_commission(service, marketer.id, product.id, customer_id="a", conversion_date=NOW - timedelta(days=10))
    await new_commission(service, marketer.id, product.id, customer_id="b", conversion_date=NOW - timedelta(days=40))
    await service.approve(a.id, admin.id, override_clearance=True)

    stats = await service.get_lifecycle_stats()

    assert stats["total_commissions"] == 2
    assert stats["status_breakdown"] == {"approved": 1, "pending": 1}
    assert stats["average_clearance_days"] == 10.0
    assert stats["eligible_for_approval"] == 1
