"""
APScheduler configuration for the commission jobs.

Started and stopped from the FastAPI lifespan when SCHEDULER_ENABLED is set.
"""
from __future__ import annotations

import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import settings
from app.jobs.commission_jobs import run_job

logger = logging.getLogger(__name__)

jobstores = {
    "default": MemoryJobStore(),
}

executors = {
    "default": AsyncIOExecutor(),
}

job_defaults = {
    "coalesce": True,         # collapse missed runs into one
    "max_instances": 1,
    "misfire_grace_time": 60,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone="UTC",
)


def start_scheduler() -> None:
    if scheduler.running:
        return

    scheduler.add_job(
        run_job,
        "interval",
        hours=settings.AUTO_APPROVAL_INTERVAL_HOURS,
        args=["process_eligible_commissions"],
        id="process_eligible_commissions",
        name="Auto-approve eligible commissions",
        replace_existing=True,
    )
    scheduler.add_job(
        run_job,
        "interval",
        hours=settings.AUTO_APPROVAL_INTERVAL_HOURS,
        args=["generate_lifecycle_report"],
        id="generate_lifecycle_report",
        name="Commission lifecycle report",
        replace_existing=True,
    )
    scheduler.add_job(
        run_job,
        "interval",
        hours=24,
        args=["check_approaching_clearance"],
        id="check_approaching_clearance",
        name="Commissions approaching clearance",
        replace_existing=True,
    )
    scheduler.add_job(
        run_job,
        "interval",
        hours=settings.LINK_CLEANUP_INTERVAL_HOURS,
        args=["cleanup_expired_links"],
        id="cleanup_expired_links",
        name="Deactivate expired referral links",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Background job scheduler started")
    for job in scheduler.get_jobs():
        logger.info("Scheduled job: %s - Next run: %s", job.name, job.next_run_time)


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


def get_job_status() -> list[dict]:
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
