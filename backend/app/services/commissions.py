"""
Commission lifecycle manager.

Each mutating call is one transaction: locked lookup, validation, computation,
the commission write and its adjustment rows commit together or not at all.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AffiliateError,
    DuplicateError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.tracking import utcnow
from app.models.commission import Commission
from app.models.commission_adjustment import (
    ADJUSTMENT_CORRECTION,
    ADJUSTMENT_PAYMENT,
    ADJUSTMENT_STATUS_CHANGE,
    CommissionAdjustment,
)
from app.models.conversion_event import ConversionEvent
from app.models.product import Product
from app.models.referral_link import ReferralLink
from app.models.user import User
from app.services.commission_calculator import calculate, rules_from_product, to_decimal
from app.services.commission_state_machine import (
    CommissionStatus,
    status_change_reason,
    validate_transition,
)

logger = logging.getLogger(__name__)

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_MARK_PAID = "mark_paid"
ACTION_CLAW_BACK = "claw_back"
TRANSITION_ACTIONS = (ACTION_APPROVE, ACTION_REJECT, ACTION_MARK_PAID, ACTION_CLAW_BACK)

_STATUS_CHANGE_RE = re.compile(r"Status changed from \w+ to (\w+)")


@dataclass
class CommissionCreate:
    marketer_id: uuid.UUID
    customer_id: str
    product_id: uuid.UUID
    tracking_code: str
    initial_spend_amount: Decimal
    conversion_date: Optional[datetime] = None
    clearance_period_days: Optional[int] = None
    custom_rate: Optional[Decimal] = None
    custom_amount: Optional[Decimal] = None
    override_product_rules: bool = False


@dataclass
class CommissionFilters:
    marketer_id: Optional[uuid.UUID] = None
    product_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


@dataclass
class BatchResult:
    commissions: list[Commission] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class BulkApprovalResult:
    approved: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class CommissionService:
    def __init__(self, db: AsyncSession, now_fn: Callable[[], datetime] = utcnow):
        self.db = db
        self.now_fn = now_fn

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _get_for_update(self, commission_id: uuid.UUID) -> Commission:
        stmt = (
            select(Commission)
            .where(Commission.id == commission_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        commission = (await self.db.execute(stmt)).scalar_one_or_none()
        if commission is None:
            raise NotFoundError("Commission not found", commission_id=str(commission_id))
        return commission

    def _record_status_change(
        self,
        commission: Commission,
        new_status: str,
        admin_id: uuid.UUID | None,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> CommissionAdjustment:
        validate_transition(commission.status, new_status)

        old_status = commission.status
        commission.status = new_status
        if new_status == CommissionStatus.APPROVED:
            commission.approval_date = at or self.now_fn()

        adjustment = CommissionAdjustment(
            commission_id=commission.id,
            adjustment_type=ADJUSTMENT_STATUS_CHANGE,
            amount=Decimal("0"),
            reason=status_change_reason(old_status, new_status, reason),
            admin_id=admin_id,
        )
        self.db.add(adjustment)
        return adjustment

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to %s: %s", action, e)
            raise InfrastructureError(f"Failed to {action}") from e

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    async def create_commission(self, data: CommissionCreate) -> Commission:
        try:
            marketer = await self.db.get(User, data.marketer_id)
            if marketer is None:
                raise NotFoundError("Marketer not found", marketer_id=str(data.marketer_id))
            if not marketer.is_active_marketer:
                raise ValidationError("Invalid or inactive marketer", marketer_id=str(data.marketer_id))

            product = await self.db.get(Product, data.product_id)
            if product is None:
                raise NotFoundError("Product not found", product_id=str(data.product_id))
            if product.status != "active":
                raise ValidationError("Invalid or inactive product", product_id=str(data.product_id))

            spend = to_decimal(data.initial_spend_amount, "initial_spend_amount")
            if spend < 0:
                raise ValidationError("Initial spend amount cannot be negative")

            rules = rules_from_product(product)
            if not data.override_product_rules and spend < rules.min_initial_spend:
                raise ValidationError(
                    f"Initial spend amount {spend} is below minimum required {rules.min_initial_spend.normalize():f}"
                )

            existing = (
                await self.db.execute(
                    select(Commission.id)
                    .where(Commission.customer_id == data.customer_id)
                    .where(Commission.product_id == data.product_id)
                    .where(Commission.tracking_code == data.tracking_code)
                )
            ).first()
            if existing:
                raise DuplicateError(
                    "Commission already exists for this customer and product combination",
                    commission_id=str(existing[0]),
                )

            quote = calculate(
                spend,
                rules,
                custom_rate=data.custom_rate,
                custom_amount=data.custom_amount,
                override=data.override_product_rules,
            )

            conversion_date = data.conversion_date or self.now_fn()
            clearance_days = (
                data.clearance_period_days
                if data.clearance_period_days is not None
                else settings.DEFAULT_CLEARANCE_PERIOD_DAYS
            )
            if clearance_days < 0:
                raise ValidationError("Clearance period cannot be negative")

            commission = Commission(
                marketer_id=data.marketer_id,
                customer_id=data.customer_id,
                product_id=data.product_id,
                tracking_code=data.tracking_code,
                initial_spend_amount=spend,
                commission_rate=quote.commission_rate,
                commission_amount=quote.commission_amount,
                status=CommissionStatus.PENDING,
                conversion_date=conversion_date,
                clearance_period_days=clearance_days,
                eligible_for_payout_date=conversion_date + timedelta(days=clearance_days),
            )
            self.db.add(commission)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateError("Commission already exists for this customer and product combination") from e
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        logger.info(
            "Created commission %s for marketer %s: amount %s at rate %s",
            commission.id,
            commission.marketer_id,
            commission.commission_amount,
            commission.commission_rate,
        )
        return commission

    async def create_for_conversion(
        self,
        conversion_id: uuid.UUID,
        marketer_id: uuid.UUID | None = None,
        **overrides: Any,
    ) -> Commission:
        """Reconciliation flow: build a commission from a recorded, eligible conversion."""
        conversion = await self.db.get(ConversionEvent, conversion_id)
        if conversion is None:
            raise NotFoundError("Conversion not found", conversion_id=str(conversion_id))
        if not conversion.commission_eligible:
            raise ValidationError("Conversion is not eligible for commission", conversion_id=str(conversion_id))

        if marketer_id is None:
            link = (
                await self.db.execute(
                    select(ReferralLink).where(ReferralLink.tracking_code == conversion.tracking_code)
                )
            ).scalar_one_or_none()
            if link is None:
                raise NotFoundError("Referral link not found", tracking_code=conversion.tracking_code)
            marketer_id = link.marketer_id

        return await self.create_commission(
            CommissionCreate(
                marketer_id=marketer_id,
                customer_id=conversion.customer_id,
                product_id=conversion.product_id,
                tracking_code=conversion.tracking_code,
                initial_spend_amount=conversion.initial_spend_amount,
                conversion_date=conversion.conversion_timestamp,
                **overrides,
            )
        )

    async def batch_create(self, items: list[CommissionCreate]) -> BatchResult:
        result = BatchResult()
        for index, item in enumerate(items):
            try:
                result.commissions.append(await self.create_commission(item))
            except AffiliateError as e:
                logger.warning("Batch commission item %s failed: %s", index, e.message)
                result.errors.append({"index": index, "error": e.message})
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def approve(
        self,
        commission_id: uuid.UUID,
        admin_id: uuid.UUID | None = None,
        override_clearance: bool = False,
    ) -> Commission:
        try:
            commission = await self._get_for_update(commission_id)
            if commission.status != CommissionStatus.PENDING:
                raise InvalidTransitionError(
                    commission.status,
                    CommissionStatus.APPROVED,
                    f"Cannot approve commission with status {commission.status}",
                )
            if not override_clearance and self.now_fn() < commission.eligible_for_payout_date:
                raise ValidationError(
                    "Commission is still within clearance period and cannot be approved yet",
                    eligible_for_payout_date=commission.eligible_for_payout_date.isoformat(),
                )
            self._record_status_change(commission, CommissionStatus.APPROVED, admin_id)
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("approve commission")
        logger.info("Approved commission %s (admin %s, override %s)", commission_id, admin_id, override_clearance)
        return commission

    async def reject(self, commission_id: uuid.UUID, reason: str, admin_id: uuid.UUID | None = None) -> Commission:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required")

        try:
            commission = await self._get_for_update(commission_id)
            if commission.status != CommissionStatus.PENDING:
                raise InvalidTransitionError(
                    commission.status,
                    CommissionStatus.REJECTED,
                    f"Cannot reject commission with status {commission.status}",
                )
            self._record_status_change(commission, CommissionStatus.REJECTED, admin_id, reason)
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("reject commission")
        logger.info("Rejected commission %s: %s", commission_id, reason)
        return commission

    async def mark_paid(
        self,
        commission_id: uuid.UUID,
        admin_id: uuid.UUID | None = None,
        payment_reference: str | None = None,
    ) -> Commission:
        try:
            commission = await self._get_for_update(commission_id)
            if commission.status != CommissionStatus.APPROVED:
                raise InvalidTransitionError(
                    commission.status,
                    CommissionStatus.PAID,
                    f"Cannot mark commission as paid with status {commission.status}",
                )
            self._record_status_change(commission, CommissionStatus.PAID, admin_id)

            if payment_reference:
                self.db.add(
                    CommissionAdjustment(
                        commission_id=commission.id,
                        adjustment_type=ADJUSTMENT_PAYMENT,
                        amount=commission.commission_amount,
                        reason=f"Payment processed - Reference: {payment_reference}",
                        reference=payment_reference,
                        admin_id=admin_id,
                    )
                )
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("mark commission paid")
        logger.info("Marked commission %s as paid (reference %s)", commission_id, payment_reference)
        return commission

    async def recalculate(
        self,
        commission_id: uuid.UUID,
        new_amount: Decimal | None = None,
        new_rate: Decimal | None = None,
        admin_id: uuid.UUID | None = None,
    ) -> Commission:
        try:
            commission = await self._get_for_update(commission_id)
            if commission.status != CommissionStatus.PENDING:
                raise ValidationError("Only pending commissions can be recalculated")

            product = await self.db.get(Product, commission.product_id)
            if product is None:
                raise NotFoundError("Product not found", product_id=str(commission.product_id))

            quote = calculate(
                commission.initial_spend_amount,
                rules_from_product(product),
                custom_rate=new_rate,
                custom_amount=new_amount,
                override=True,
            )

            old_amount = Decimal(commission.commission_amount)
            commission.commission_rate = quote.commission_rate
            commission.commission_amount = quote.commission_amount

            if admin_id is not None:
                self.db.add(
                    CommissionAdjustment(
                        commission_id=commission.id,
                        adjustment_type=ADJUSTMENT_CORRECTION,
                        amount=quote.commission_amount - old_amount,
                        reason="Manual recalculation",
                        admin_id=admin_id,
                    )
                )
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("recalculate commission")
        logger.info("Recalculated commission %s: %s -> %s", commission_id, old_amount, commission.commission_amount)
        return commission

    async def update_status(
        self,
        commission_id: uuid.UUID,
        status: str,
        admin_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> Commission:
        try:
            commission = await self._get_for_update(commission_id)
            old_status = commission.status
            self._record_status_change(commission, status, admin_id, reason)
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("update commission status")
        logger.info("Commission %s status %s -> %s", commission_id, old_status, status)
        return commission

    async def transition(
        self,
        commission_id: uuid.UUID,
        action: str,
        actor_id: uuid.UUID | None,
        reason: str | None = None,
        **options: Any,
    ) -> Commission:
        if action == ACTION_APPROVE:
            return await self.approve(
                commission_id,
                admin_id=actor_id,
                override_clearance=bool(options.get("override_clearance", False)),
            )
        if action == ACTION_REJECT:
            return await self.reject(commission_id, reason or "", admin_id=actor_id)
        if action == ACTION_MARK_PAID:
            return await self.mark_paid(
                commission_id,
                admin_id=actor_id,
                payment_reference=options.get("payment_reference"),
            )
        if action == ACTION_CLAW_BACK:
            from app.services.adjustments import AdjustmentLedger

            amount = options.get("amount")
            if amount is None:
                commission = await self.get_commission(commission_id)
                amount = commission.commission_amount
            outcome = await AdjustmentLedger(self.db).process_clawback(
                commission_id,
                amount,
                reason or "",
                admin_id=actor_id,
                clawback_type=options.get("clawback_type") or "manual",
            )
            return outcome.commission

        raise ValidationError(f"Unknown commission action {action}", allowed=list(TRANSITION_ACTIONS))

    async def bulk_approve_eligible(self, now: datetime | None = None) -> BulkApprovalResult:
        """
        Approve every pending commission past its clearance date, one commit each.

        Safe to re-run: rows that are no longer pending are skipped.
        """
        now = now or self.now_fn()
        result = BulkApprovalResult()

        ids = (
            await self.db.execute(
                select(Commission.id)
                .where(Commission.status == CommissionStatus.PENDING)
                .where(Commission.eligible_for_payout_date <= now)
                .order_by(Commission.eligible_for_payout_date.asc())
            )
        ).scalars().all()

        for commission_id in ids:
            try:
                commission = await self._get_for_update(commission_id)
                if commission.status != CommissionStatus.PENDING:
                    await self.db.rollback()
                    result.skipped += 1
                    continue
                self._record_status_change(commission, CommissionStatus.APPROVED, None, at=now)
                await self.db.commit()
                result.approved += 1
            except (AffiliateError, SQLAlchemyError) as e:
                await self.db.rollback()
                message = e.message if isinstance(e, AffiliateError) else str(e)
                logger.warning("Failed to approve commission %s: %s", commission_id, message)
                result.errors.append(f"Failed to approve commission {commission_id}: {message}")

        logger.info(
            "Bulk approval finished: %s approved, %s skipped, %s errors",
            result.approved,
            result.skipped,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    async def get_commission(self, commission_id: uuid.UUID) -> Commission:
        commission = await self.db.get(Commission, commission_id)
        if commission is None:
            raise NotFoundError("Commission not found", commission_id=str(commission_id))
        return commission

    async def list_commissions(
        self,
        filters: CommissionFilters | None = None,
        page: int = 1,
        limit: int = 10,
        descending: bool = True,
    ) -> tuple[list[Commission], int]:
        filters = filters or CommissionFilters()
        conditions = []
        if filters.marketer_id is not None:
            conditions.append(Commission.marketer_id == filters.marketer_id)
        if filters.product_id is not None:
            conditions.append(Commission.product_id == filters.product_id)
        if filters.status:
            if filters.status not in CommissionStatus.all():
                raise ValidationError(f"Unknown commission status {filters.status}", allowed=CommissionStatus.all())
            conditions.append(Commission.status == filters.status)
        if filters.start_date is not None:
            conditions.append(Commission.conversion_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(Commission.conversion_date <= filters.end_date)
        if filters.min_amount is not None:
            conditions.append(Commission.commission_amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(Commission.commission_amount <= filters.max_amount)

        total = await self.db.scalar(select(func.count()).select_from(Commission).where(*conditions))
        order = Commission.conversion_date.desc() if descending else Commission.conversion_date.asc()
        rows = (
            await self.db.execute(
                select(Commission)
                .where(*conditions)
                .order_by(order)
                .offset((max(page, 1) - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()
        return list(rows), int(total or 0)

    async def list_eligible_for_approval(self, now: datetime | None = None) -> list[Commission]:
        now = now or self.now_fn()
        rows = (
            await self.db.execute(
                select(Commission)
                .where(Commission.status == CommissionStatus.PENDING)
                .where(Commission.eligible_for_payout_date <= now)
                .order_by(Commission.eligible_for_payout_date.asc())
            )
        ).scalars().all()
        return list(rows)

    async def find_approaching_clearance(self, days: int, now: datetime | None = None) -> list[Commission]:
        """Pending commissions that clear within the next `days` days."""
        now = now or self.now_fn()
        rows = (
            await self.db.execute(
                select(Commission)
                .where(Commission.status == CommissionStatus.PENDING)
                .where(Commission.eligible_for_payout_date > now)
                .where(Commission.eligible_for_payout_date <= now + timedelta(days=days))
                .order_by(Commission.eligible_for_payout_date.asc())
            )
        ).scalars().all()
        return list(rows)

    async def get_commission_summary(self, marketer_id: uuid.UUID) -> dict[str, Any]:
        rows = (
            await self.db.execute(
                select(Commission.status, func.sum(Commission.commission_amount), func.count())
                .where(Commission.marketer_id == marketer_id)
                .group_by(Commission.status)
            )
        ).all()

        by_status = {status: (Decimal(str(total or 0)), count) for status, total, count in rows}

        def amount(status: str) -> Decimal:
            return by_status.get(status, (Decimal("0"), 0))[0]

        pending = amount(CommissionStatus.PENDING)
        approved = amount(CommissionStatus.APPROVED)
        paid = amount(CommissionStatus.PAID)
        return {
            "total_earned": pending + approved + paid,
            "pending_amount": pending,
            "approved_amount": approved,
            "paid_amount": paid,
            "clawed_back_amount": amount(CommissionStatus.CLAWED_BACK),
            "total_commissions": sum(count for _, count in by_status.values()),
        }

    async def get_available_balance(self, marketer_id: uuid.UUID) -> Decimal:
        total = await self.db.scalar(
            select(func.sum(Commission.commission_amount))
            .where(Commission.marketer_id == marketer_id)
            .where(Commission.status == CommissionStatus.APPROVED)
        )
        return Decimal(str(total or 0))

    async def get_lifecycle_stats(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        conditions = []
        if start is not None:
            conditions.append(Commission.conversion_date >= start)
        if end is not None:
            conditions.append(Commission.conversion_date <= end)

        rows = (
            await self.db.execute(
                select(Commission.status, func.count()).where(*conditions).group_by(Commission.status)
            )
        ).all()
        status_breakdown = {status: count for status, count in rows}

        approved = (
            await self.db.execute(
                select(Commission.conversion_date, Commission.approval_date)
                .where(*conditions)
                .where(Commission.status == CommissionStatus.APPROVED)
                .where(Commission.approval_date.is_not(None))
            )
        ).all()
        clearance_days = [
            (approval - conversion).total_seconds() / 86400 for conversion, approval in approved
        ]
        average = round(sum(clearance_days) / len(clearance_days), 2) if clearance_days else 0.0

        eligible = await self.db.scalar(
            select(func.count())
            .select_from(Commission)
            .where(Commission.status == CommissionStatus.PENDING)
            .where(Commission.eligible_for_payout_date <= (now or self.now_fn()))
        )

        return {
            "total_commissions": sum(status_breakdown.values()),
            "status_breakdown": status_breakdown,
            "average_clearance_days": average,
            "pending_commissions": status_breakdown.get(CommissionStatus.PENDING, 0),
            "eligible_for_approval": int(eligible or 0),
        }

    async def get_status_history(self, commission_id: uuid.UUID) -> list[dict[str, Any]]:
        commission = await self.get_commission(commission_id)
        adjustments = (
            await self.db.execute(
                select(CommissionAdjustment)
                .where(CommissionAdjustment.commission_id == commission_id)
                .where(CommissionAdjustment.adjustment_type == ADJUSTMENT_STATUS_CHANGE)
                .order_by(CommissionAdjustment.created_at.asc())
            )
        ).scalars().all()

        history: list[dict[str, Any]] = [
            {
                "status": CommissionStatus.PENDING,
                "timestamp": commission.created_at,
                "admin_id": None,
                "reason": "Commission created",
            }
        ]
        for adjustment in adjustments:
            match = _STATUS_CHANGE_RE.match(adjustment.reason)
            if match:
                history.append(
                    {
                        "status": match.group(1),
                        "timestamp": adjustment.created_at,
                        "admin_id": adjustment.admin_id,
                        "reason": adjustment.reason,
                    }
                )
        return history
