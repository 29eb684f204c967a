"""
Periodic commission jobs.

Each job opens its own session. They are safe to re-run after a crash: bulk
approval skips anything that is no longer pending and link cleanup only
touches links that are still active.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.tracking import utcnow
from app.db.session import AsyncSessionLocal
from app.services.click_ledger import ClickLedger
from app.services.commissions import CommissionService

logger = logging.getLogger(__name__)


async def process_eligible_commissions(
    sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> dict[str, Any]:
    """Auto-approve pending commissions past their clearance period."""
    started = time.monotonic()
    async with sessionmaker() as db:
        result = await CommissionService(db).bulk_approve_eligible()

    elapsed_ms = int((time.monotonic() - started) * 1000)
    summary = (
        f"Automated commission processing completed in {elapsed_ms}ms. "
        f"Auto-approved: {result.approved} commissions. Errors: {len(result.errors)}"
    )
    logger.info(summary)
    for error in result.errors:
        logger.warning(error)

    return {
        "auto_approved": result.approved,
        "skipped": result.skipped,
        "errors": result.errors,
        "summary": summary,
    }


async def generate_lifecycle_report(
    sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> dict[str, Any]:
    async with sessionmaker() as db:
        stats = await CommissionService(db).get_lifecycle_stats()

    logger.info(
        "Commission lifecycle: %s total, %s pending, %s eligible for approval, breakdown %s",
        stats["total_commissions"],
        stats["pending_commissions"],
        stats["eligible_for_approval"],
        stats["status_breakdown"],
    )
    return stats


async def check_approaching_clearance(
    days: int | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> list[dict[str, Any]]:
    days = days if days is not None else settings.CLEARANCE_WARNING_DAYS
    async with sessionmaker() as db:
        commissions = await CommissionService(db).find_approaching_clearance(days)

    now = utcnow()
    upcoming = [
        {
            "commission_id": c.id,
            "marketer_id": c.marketer_id,
            "commission_amount": c.commission_amount,
            "eligible_for_payout_date": c.eligible_for_payout_date,
            "days_remaining": max(0, (c.eligible_for_payout_date - now).days),
        }
        for c in commissions
    ]
    logger.info("%s commissions clear within %s days", len(upcoming), days)
    return upcoming


async def cleanup_expired_links(
    sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> int:
    async with sessionmaker() as db:
        return await ClickLedger(db).cleanup_expired_links()


async def run_job(name: str) -> None:
    """Scheduler entry point. Failures are logged, not raised."""
    job = JOBS[name]
    try:
        await job()
    except Exception:
        logger.exception("Job '%s' failed", name)


JOBS = {
    "process_eligible_commissions": process_eligible_commissions,
    "generate_lifecycle_report": generate_lifecycle_report,
    "check_approaching_clearance": check_approaching_clearance,
    "cleanup_expired_links": cleanup_expired_links,
}
