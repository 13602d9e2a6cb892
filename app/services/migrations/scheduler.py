"""Background tasks for price migrations.

Each ``*_once`` coroutine opens its own session, does one pass and returns a
summary; the ``run_*_task`` loops call them on an interval and never die on
an exception.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select

from app.core.config import settings
from app.core.exceptions import MigrationError
from app.core.logging_config import get_logger
from app.db.deps import AsyncSessionLocal
from app.models.migration_job import MigrationJob
from app.models.subscription import Subscription
from app.services.mail_handler_service.message_queue import run_email_delivery_task
from app.services.migrations.eligibility import migration_filters
from app.services.migrations.monitoring_service import (
    ALERT_FAILURE_RATE,
    ALERT_MIN_PROCESSED,
    MigrationMonitoringService,
    failure_rate,
)
from app.services.migrations.price_migration_service import PriceMigrationService
from app.services.migrations.retry_service import MigrationRetryService
from app.services.notifications import admin_notifications
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import JobStatus, NotificationType, SubscriptionStatus


logger = get_logger("migration_scheduler")

DAILY_MIGRATION_JOB_NAME = "Daily Bulk Price Migration"
DISPATCH_BATCH_LIMIT = 10
SUSPENSION_WINDOW_HOURS = 24

_tasks: List[asyncio.Task] = []


async def run_daily_migration_once(session_factory=AsyncSessionLocal) -> Dict[str, Any]:
    """Migrate every plan that has subscriptions past their notice period."""
    async with session_factory() as db:
        try:
            now = get_current_utc_datetime()
            rows = await db.execute(
                select(Subscription.plan_id)
                .where(*migration_filters(None, now))
                .distinct()
                .limit(settings.MIGRATION_MAX_PLANS_PER_RUN)
            )
            plan_ids = list(rows.scalars().all())
            if not plan_ids:
                logger.info("Daily migration: no subscriptions due")
                return {"plans": 0, "migrated": 0, "failed": 0, "results": [], "errors": []}

            service = PriceMigrationService(db)
            results = []
            errors = []
            for plan_id in plan_ids:
                try:
                    outcome = await service.bulk_migrate_ready(
                        plan_id, batch_size=settings.MIGRATION_DEFAULT_BATCH_SIZE
                    )
                except MigrationError as e:
                    # Recorded per plan; the remaining plans still run
                    await db.rollback()
                    logger.error(f"Daily migration of plan {plan_id} failed: {e.message}")
                    errors.append({"plan_id": plan_id, "error": e.message})
                    continue
                results.append(outcome)

            migrated = sum(r["succeeded"] for r in results)
            failed = sum(r["failed"] for r in results)
            await admin_notifications.send_to_all_admins(
                db,
                type=NotificationType.migration_summary,
                title="Daily Migration Summary",
                message=(
                    f"Processed {len(plan_ids)} plan(s): {migrated} subscriptions migrated, "
                    f"{failed} failed."
                    + (f" {len(errors)} plan(s) could not be run." if errors else "")
                ),
                metadata={
                    "plans": len(plan_ids),
                    "migrated": migrated,
                    "failed": failed,
                    "job_ids": [str(r["job_id"]) for r in results],
                    "plan_errors": [
                        {"plan_id": str(err["plan_id"]), "error": err["error"]} for err in errors
                    ],
                },
            )
            logger.info(f"Daily migration: {migrated} migrated, {failed} failed across {len(plan_ids)} plans")
            return {
                "plans": len(plan_ids),
                "migrated": migrated,
                "failed": failed,
                "results": results,
                "errors": errors,
            }
        except Exception as e:
            logger.exception(f"Daily migration failed: {e}")
            await db.rollback()
            await admin_notifications.notify_cron_job_failed(
                db, job_name=DAILY_MIGRATION_JOB_NAME, error_message=str(e)
            )
            raise


async def run_retry_sweep_once(session_factory=AsyncSessionLocal) -> Dict[str, Any]:
    async with session_factory() as db:
        return await MigrationRetryService(db).auto_retry_sweep()


async def dispatch_pending_jobs_once(
    session_factory=AsyncSessionLocal, limit: int = DISPATCH_BATCH_LIMIT
) -> List[Dict[str, Any]]:
    """Run due PENDING jobs, oldest first. A job another worker starts first is skipped."""
    async with session_factory() as db:
        now = get_current_utc_datetime()
        rows = await db.execute(
            select(MigrationJob.id)
            .where(
                MigrationJob.status == JobStatus.pending,
                or_(MigrationJob.scheduled_for.is_(None), MigrationJob.scheduled_for <= now),
            )
            .order_by(MigrationJob.created_at.asc())
            .limit(limit)
        )
        job_ids = list(rows.scalars().all())

        service = PriceMigrationService(db)
        dispatched = []
        for job_id in job_ids:
            try:
                outcome = await service.run_job(job_id)
                dispatched.append({"job_id": job_id, "success": True, "result": outcome})
            except Exception as e:
                await db.rollback()
                logger.error(f"Dispatch of job {job_id} failed: {e}")
                dispatched.append({"job_id": job_id, "success": False, "error": str(e)})
        if job_ids:
            logger.info(f"Dispatcher ran {len(job_ids)} pending job(s)")
        return dispatched


async def run_health_check_once(session_factory=AsyncSessionLocal) -> Dict[str, Any]:
    """Raise admin alerts for stuck jobs, failing jobs, suspension spikes and revenue loss."""
    async with session_factory() as db:
        now = get_current_utc_datetime()
        monitoring = MigrationMonitoringService(db)

        stuck = await monitoring.get_stuck_jobs(now)
        if stuck:
            await admin_notifications.notify_stuck_jobs(db, jobs=stuck)

        failing = 0
        for job, plan_name in await monitoring.get_active_jobs():
            rate = failure_rate(job)
            if job.processed_count > ALERT_MIN_PROCESSED and rate > ALERT_FAILURE_RATE:
                failing += 1
                await admin_notifications.notify_high_failure_rate(
                    db,
                    job_id=job.id,
                    plan_name=plan_name,
                    failure_rate=rate * 100,
                    failed_count=job.failed_count,
                    processed_count=job.processed_count,
                )

        suspended = (
            await db.execute(
                select(func.count(Subscription.id)).where(
                    Subscription.status == SubscriptionStatus.suspended,
                    Subscription.suspended_at >= now - timedelta(hours=SUSPENSION_WINDOW_HOURS),
                )
            )
        ).scalar_one()
        if suspended > settings.MASS_SUSPENSION_THRESHOLD:
            await admin_notifications.notify_mass_suspensions(
                db, count=suspended, window_hours=SUSPENSION_WINDOW_HOURS
            )

        current, previous = await _recurring_revenue(db, now)
        drop = (previous - current) / previous * 100 if previous else 0.0
        if drop > settings.REVENUE_DROP_ALERT_PERCENT:
            await admin_notifications.notify_revenue_drop(
                db, current_pence=current, previous_pence=previous, drop_percentage=drop
            )

        return {
            "stuck_jobs": len(stuck),
            "high_failure_jobs": failing,
            "suspensions_24h": suspended,
            "revenue_drop_percentage": round(drop, 1),
        }


async def _recurring_revenue(db, now: datetime) -> tuple[int, int]:
    """(current, 24h-ago) monthly recurring revenue in pence.

    Revenue lost in the window is what suspended subscriptions were paying.
    """
    current = (
        await db.execute(
            select(func.coalesce(func.sum(Subscription.price_pence), 0)).where(
                Subscription.status == SubscriptionStatus.active
            )
        )
    ).scalar_one()
    lost = (
        await db.execute(
            select(func.coalesce(func.sum(Subscription.price_pence), 0)).where(
                Subscription.status == SubscriptionStatus.suspended,
                Subscription.suspended_at >= now - timedelta(hours=SUSPENSION_WINDOW_HOURS),
            )
        )
    ).scalar_one()
    return int(current), int(current) + int(lost)


def seconds_until_daily_run(now: datetime, hour_utc: Optional[int] = None) -> float:
    hour_utc = settings.MIGRATION_DAILY_HOUR_UTC if hour_utc is None else hour_utc
    next_run = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def run_daily_migration_task():
    logger.info(f"Starting daily migration task (hour={settings.MIGRATION_DAILY_HOUR_UTC} UTC)")
    try:
        while True:
            await asyncio.sleep(seconds_until_daily_run(get_current_utc_datetime()))
            try:
                await run_daily_migration_once()
            except Exception as e:
                logger.exception(f"Daily migration task error: {e}")
    except asyncio.CancelledError:
        logger.info("Daily migration task cancelled; shutting down")
        raise


async def _run_interval_task(name: str, once, poll_seconds: int):
    logger.info(f"Starting {name} task (interval={poll_seconds}s)")
    try:
        while True:
            try:
                await once()
            except Exception as e:
                logger.exception(f"{name} error: {e}")
            await asyncio.sleep(poll_seconds)
    except asyncio.CancelledError:
        logger.info(f"{name} task cancelled; shutting down")
        raise


def start_background_tasks() -> List[asyncio.Task]:
    if _tasks:
        return _tasks
    _tasks.extend([
        asyncio.create_task(run_daily_migration_task()),
        asyncio.create_task(
            _run_interval_task("Retry sweep", run_retry_sweep_once, settings.RETRY_SWEEP_INTERVAL_SECONDS)
        ),
        asyncio.create_task(
            _run_interval_task(
                "Job dispatcher", dispatch_pending_jobs_once, settings.JOB_DISPATCH_INTERVAL_SECONDS
            )
        ),
        asyncio.create_task(
            _run_interval_task(
                "Health check", run_health_check_once, settings.HEALTH_CHECK_INTERVAL_SECONDS
            )
        ),
        asyncio.create_task(run_email_delivery_task()),
    ])
    logger.info(f"Started {len(_tasks)} background tasks")
    return _tasks


async def stop_background_tasks() -> None:
    for task in _tasks:
        task.cancel()
    await asyncio.gather(*_tasks, return_exceptions=True)
    _tasks.clear()
    logger.info("Background tasks stopped")
