"""
Adjustment ledger and clawback processing.

commission_adjustments is append-only. What a marketer is actually owed is
derived on read by net_amount(); it is never stored.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AffiliateError, InfrastructureError, NotFoundError, ValidationError
from app.models.commission import Commission
from app.models.commission_adjustment import (
    ADJUSTMENT_BONUS,
    ADJUSTMENT_CLAWBACK,
    ADJUSTMENT_CORRECTION,
    ADJUSTMENT_STATUS_CHANGE,
    CLAWBACK_TYPES,
    CommissionAdjustment,
)
from app.services.commission_calculator import to_decimal
from app.services.commission_state_machine import (
    ADJUSTABLE_STATUSES,
    CLAWBACK_STATUSES,
    CommissionStatus,
    status_change_reason,
    validate_transition,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

MANUAL_ADJUSTMENT_TYPES = (ADJUSTMENT_BONUS, ADJUSTMENT_CORRECTION)

# Entry types that move the owed amount beyond commission_amount.
# Corrections are already folded into commission_amount when applied.
NET_AFFECTING_TYPES = (ADJUSTMENT_BONUS, ADJUSTMENT_CLAWBACK)


def net_amount(commission: Commission, adjustments: Iterable[CommissionAdjustment]) -> Decimal:
    """
    commission_amount plus bonus and clawback entries, floored at zero.

    Not a plain sum of every ledger row: correction rows record a delta that is
    already part of commission_amount, and payment / status_change rows are
    informational. Summing them would count corrections twice and payments as money owed.
    """
    total = sum(
        (Decimal(a.amount) for a in adjustments if a.adjustment_type in NET_AFFECTING_TYPES),
        ZERO,
    )
    return max(ZERO, Decimal(commission.commission_amount) + total)


@dataclass
class AdjustmentOutcome:
    commission: Commission
    adjustment: CommissionAdjustment


class AdjustmentLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

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

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Failed to %s: %s", action, e)
            raise InfrastructureError(f"Failed to {action}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def apply_manual_adjustment(
        self,
        commission_id: uuid.UUID,
        amount: Any,
        adjustment_type: str,
        reason: str,
        admin_id: uuid.UUID,
    ) -> AdjustmentOutcome:
        if adjustment_type not in MANUAL_ADJUSTMENT_TYPES:
            raise ValidationError(f"Unsupported adjustment type {adjustment_type}")
        amount = to_decimal(amount, "amount")
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")

        try:
            commission = await self._get_for_update(commission_id)
            if commission.status not in ADJUSTABLE_STATUSES:
                raise ValidationError(f"Cannot apply adjustment to commission with status {commission.status}")
            if amount < 0 and -amount > Decimal(commission.commission_amount):
                raise ValidationError("Negative adjustment cannot exceed original commission amount")

            if adjustment_type == ADJUSTMENT_CORRECTION:
                commission.commission_amount = max(ZERO, Decimal(commission.commission_amount) + amount)

            adjustment = CommissionAdjustment(
                commission_id=commission.id,
                adjustment_type=adjustment_type,
                amount=amount,
                reason=f"Manual {adjustment_type}: {reason}",
                admin_id=admin_id,
            )
            self.db.add(adjustment)
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("apply adjustment")
        logger.info("Applied %s of %s to commission %s", adjustment_type, amount, commission_id)
        return AdjustmentOutcome(commission=commission, adjustment=adjustment)

    async def process_clawback(
        self,
        commission_id: uuid.UUID,
        amount: Any,
        reason: str,
        admin_id: uuid.UUID | None,
        clawback_type: str = "manual",
    ) -> AdjustmentOutcome:
        """Full clawback: records -amount and moves the commission to clawed_back."""
        amount = self._validate_clawback_input(amount, clawback_type)

        try:
            commission = await self._get_for_update(commission_id)
            if commission.status not in CLAWBACK_STATUSES:
                raise ValidationError(f"Cannot process clawback for commission with status {commission.status}")
            if amount > Decimal(commission.commission_amount):
                raise ValidationError("Clawback amount cannot exceed original commission amount")

            validate_transition(commission.status, CommissionStatus.CLAWED_BACK)
            old_status = commission.status
            commission.status = CommissionStatus.CLAWED_BACK

            label = f"{clawback_type.upper()} clawback: {reason}"
            adjustment = CommissionAdjustment(
                commission_id=commission.id,
                adjustment_type=ADJUSTMENT_CLAWBACK,
                amount=-amount,
                reason=label,
                clawback_type=clawback_type,
                admin_id=admin_id,
            )
            self.db.add(adjustment)
            self.db.add(
                CommissionAdjustment(
                    commission_id=commission.id,
                    adjustment_type=ADJUSTMENT_STATUS_CHANGE,
                    amount=ZERO,
                    reason=status_change_reason(old_status, CommissionStatus.CLAWED_BACK, label),
                    admin_id=admin_id,
                )
            )
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("process clawback")
        logger.info("Clawed back %s from commission %s (%s)", amount, commission_id, clawback_type)
        return AdjustmentOutcome(commission=commission, adjustment=adjustment)

    async def process_partial_clawback(
        self,
        commission_id: uuid.UUID,
        amount: Any,
        reason: str,
        admin_id: uuid.UUID | None,
        clawback_type: str = "manual",
    ) -> AdjustmentOutcome:
        """Partial clawback: records -amount, status is left as is."""
        amount = self._validate_clawback_input(amount, clawback_type)

        try:
            commission = await self._get_for_update(commission_id)
            if commission.status not in CLAWBACK_STATUSES:
                raise ValidationError(
                    f"Cannot process partial clawback for commission with status {commission.status}"
                )
            if amount >= Decimal(commission.commission_amount):
                raise ValidationError("Use full clawback for amounts equal to or greater than commission amount")

            adjustment = CommissionAdjustment(
                commission_id=commission.id,
                adjustment_type=ADJUSTMENT_CLAWBACK,
                amount=-amount,
                reason=f"Partial {clawback_type.upper()} clawback: {reason}",
                clawback_type=clawback_type,
                admin_id=admin_id,
            )
            self.db.add(adjustment)
        except AffiliateError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Datastore unavailable") from e

        await self._commit("process partial clawback")
        logger.info("Partially clawed back %s from commission %s (%s)", amount, commission_id, clawback_type)
        return AdjustmentOutcome(commission=commission, adjustment=adjustment)

    @staticmethod
    def _validate_clawback_input(amount: Any, clawback_type: str) -> Decimal:
        if clawback_type not in CLAWBACK_TYPES:
            raise ValidationError(f"Invalid clawback type {clawback_type}", allowed=list(CLAWBACK_TYPES))
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Clawback amount must be positive")
        return amount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def list_adjustments(self, commission_id: uuid.UUID) -> list[CommissionAdjustment]:
        rows = (
            await self.db.execute(
                select(CommissionAdjustment)
                .where(CommissionAdjustment.commission_id == commission_id)
                .order_by(CommissionAdjustment.created_at.asc())
            )
        ).scalars().all()
        return list(rows)

    async def get_commission_with_adjustments(self, commission_id: uuid.UUID) -> dict[str, Any]:
        commission = await self.db.get(Commission, commission_id)
        if commission is None:
            raise NotFoundError("Commission not found", commission_id=str(commission_id))

        adjustments = await self.list_adjustments(commission_id)
        total = sum(
            (Decimal(a.amount) for a in adjustments if a.adjustment_type in NET_AFFECTING_TYPES),
            ZERO,
        )
        return {
            "commission": commission,
            "adjustments": adjustments,
            "total_adjustments": total,
            "net_amount": net_amount(commission, adjustments),
        }

    async def get_clawback_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        marketer_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        clawback_conditions = [CommissionAdjustment.adjustment_type == ADJUSTMENT_CLAWBACK]
        if start is not None:
            clawback_conditions.append(CommissionAdjustment.created_at >= start)
        if end is not None:
            clawback_conditions.append(CommissionAdjustment.created_at <= end)

        stmt = select(CommissionAdjustment).where(*clawback_conditions)
        if marketer_id is not None:
            stmt = stmt.join(Commission, Commission.id == CommissionAdjustment.commission_id).where(
                Commission.marketer_id == marketer_id
            )
        clawbacks = (await self.db.execute(stmt)).scalars().all()

        by_type: dict[str, dict[str, Any]] = {}
        total_amount = ZERO
        affected: set[uuid.UUID] = set()
        for entry in clawbacks:
            value = abs(Decimal(entry.amount))
            total_amount += value
            affected.add(entry.commission_id)
            bucket = by_type.setdefault(entry.clawback_type or "manual", {"count": 0, "amount": ZERO})
            bucket["count"] += 1
            bucket["amount"] += value

        commission_conditions = []
        if marketer_id is not None:
            commission_conditions.append(Commission.marketer_id == marketer_id)
        if start is not None:
            commission_conditions.append(Commission.created_at >= start)
        if end is not None:
            commission_conditions.append(Commission.created_at <= end)
        total_commissions = await self.db.scalar(
            select(func.count()).select_from(Commission).where(*commission_conditions)
        )
        total_commissions = int(total_commissions or 0)

        return {
            "total_clawbacks": len(clawbacks),
            "total_clawback_amount": total_amount,
            "clawbacks_by_type": by_type,
            "affected_commissions": len(affected),
            "total_commissions": total_commissions,
            "clawback_rate": (len(affected) / total_commissions) if total_commissions else 0.0,
        }
