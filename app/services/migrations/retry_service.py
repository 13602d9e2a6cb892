"""Automatic and operator-driven retries, scheduled re-runs and emergency stop.

This is the only place a FAILED job may go back to PENDING.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateError, MigrationError, ValidationError
from app.core.logging_config import get_logger
from app.models.job_attempt import JobAttempt
from app.models.migration_job import MigrationJob
from app.services.migrations.attempt_service import JobAttemptService
from app.services.migrations.error_handler import ErrorHandlerService, categorize_exception
from app.services.migrations.job_service import MigrationJobService
from app.services.migrations.price_migration_service import PriceMigrationService
from app.services.notifications import admin_notifications
from app.services.payments.stripe_client import PaymentGateway
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime
from app.utils.enums import (
    ACTIVE_JOB_STATUSES,
    AutoRetrySkipReason,
    HealthStatus,
    JobStatus,
    JobType,
    RetryStrategy,
)

logger = get_logger(__name__)

AUTO_RETRY_MAX_AGE = timedelta(hours=24)
AUTO_RETRY_MAX_FAILED = 3
AUTO_RETRY_BACKOFF = timedelta(minutes=30)
AUTO_RETRY_JOBS_PER_SWEEP = 10

MANUAL_RETRY_MAX_AGE = timedelta(hours=24)
FORCED_RETRY_MAX_AGE = timedelta(days=7)
DEFAULT_MANUAL_MAX_ATTEMPTS = 5

IMMEDIATE_RETRY_DELAY = timedelta(minutes=5)
MINUTES_PER_RETRY_BATCH = 5


def can_auto_retry(
    job: MigrationJob,
    failed_attempts: int,
    last_attempt_at: Optional[datetime],
    now: datetime,
) -> Optional[AutoRetrySkipReason]:
    """Return why ``job`` must be skipped, or None when it may be re-run.

    Age is measured from creation, so a job that is too old stays too old.
    """
    if now - ensure_utc(job.created_at) >= AUTO_RETRY_MAX_AGE:
        return AutoRetrySkipReason.too_old
    if failed_attempts >= AUTO_RETRY_MAX_FAILED:
        return AutoRetrySkipReason.too_many_failures
    if job.job_type == JobType.notice:
        return AutoRetrySkipReason.notice_job
    last_attempt_at = ensure_utc(last_attempt_at)
    if last_attempt_at and now - last_attempt_at < AUTO_RETRY_BACKOFF:
        return AutoRetrySkipReason.too_recent
    return None


class MigrationRetryService:
    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway
        self.jobs = MigrationJobService(db)
        self.attempts = JobAttemptService(db)

    async def _attempt_summary(self, job_id: uuid.UUID) -> tuple[int, Optional[datetime]]:
        failed = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(
                    JobAttempt.job_id == job_id,
                    JobAttempt.success.is_(False),
                    JobAttempt.finalized_at.is_not(None),
                )
            )
        ).scalar_one()
        last = (
            await self.db.execute(
                select(func.max(JobAttempt.created_at)).where(JobAttempt.job_id == job_id)
            )
        ).scalar_one()
        return failed, last

    async def reset_job_for_retry(
        self,
        job_id: uuid.UUID,
        scheduled_for: Optional[datetime] = None,
        claim: bool = False,
    ) -> int:
        """FAILED -> PENDING; drops failed attempts, keeps successful ones.

        With ``claim`` the job goes straight to RUNNING for a caller that runs
        it immediately, so the dispatcher cannot pick it up in between.
        Returns the number of failed attempts removed.
        """
        result = await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id, MigrationJob.status == JobStatus.failed)
            .values(
                status=JobStatus.running if claim else JobStatus.pending,
                error_message=None,
                started_at=get_current_utc_datetime() if claim else None,
                completed_at=None,
                scheduled_for=scheduled_for,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise InvalidStateError(f"Job {job_id} is no longer in a failed state")
        deleted = await self.attempts.delete_failed_attempts(job_id)
        await self.db.commit()
        await self.attempts.recompute_job_counters(job_id)
        logger.info(f"♻️ Job {job_id} reset for retry ({deleted} failed attempts removed)")
        return deleted

    # Automatic

    async def auto_retry_sweep(self) -> Dict[str, Any]:
        """Re-run recent failed jobs that pass the automatic retry policy."""
        now = get_current_utc_datetime()
        rows = await self.db.execute(
            select(MigrationJob.id)
            .where(
                MigrationJob.status == JobStatus.failed,
                MigrationJob.created_at >= now - AUTO_RETRY_MAX_AGE,
            )
            .order_by(MigrationJob.created_at.asc())
            .limit(AUTO_RETRY_JOBS_PER_SWEEP)
        )
        job_ids = list(rows.scalars().all())

        retried: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for job_id in job_ids:
            job = await self.jobs.get_job(job_id)
            failed, last_attempt_at = await self._attempt_summary(job_id)
            reason = can_auto_retry(job, failed, last_attempt_at, now)
            if reason is not None:
                logger.info(f"Skipping auto-retry of job {job_id}: {reason.message}")
                skipped.append({"job_id": job_id, "reason": reason, "message": reason.message})
                continue
            try:
                await self.reset_job_for_retry(job_id, claim=True)
                outcome = await PriceMigrationService(self.db, self.gateway).run_job(
                    job_id, claimed=True
                )
                retried.append({"job_id": job_id, "result": outcome})
            except Exception as e:
                await self.db.rollback()
                _, message = categorize_exception(e)
                logger.error(f"Auto-retry of job {job_id} failed: {message}")
                errors.append({"job_id": job_id, "error": message})

        if job_ids:
            logger.info(
                f"Auto-retry sweep: {len(retried)} retried, {len(skipped)} skipped, "
                f"{len(errors)} errors"
            )
        return {
            "processed": len(job_ids),
            "retried": retried,
            "skipped": skipped,
            "errors": errors,
        }

    # Manual

    async def manual_retry(
        self,
        job_id: uuid.UUID,
        force: bool = False,
        max_attempts: int = DEFAULT_MANUAL_MAX_ATTEMPTS,
        delay_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Queue a failed job to run again; the dispatcher picks it up at ``retry_time``."""
        job = await self.jobs.get_job(job_id)
        if job.status != JobStatus.failed:
            raise InvalidStateError(
                f"Only failed jobs can be retried (job is '{job.status.value}')"
            )

        now = get_current_utc_datetime()
        max_age = FORCED_RETRY_MAX_AGE if force else MANUAL_RETRY_MAX_AGE
        if now - ensure_utc(job.created_at) > max_age:
            hint = "" if force else "; use force to retry jobs up to 7 days old"
            raise InvalidStateError(f"Job is too old to retry{hint}")

        failed, _ = await self._attempt_summary(job_id)
        if failed >= max_attempts:
            raise InvalidStateError(
                f"Too many failed attempts ({failed}); manual intervention required"
            )

        retry_time = now + timedelta(minutes=delay_minutes) if delay_minutes else now
        deleted = await self.reset_job_for_retry(
            job_id, scheduled_for=retry_time if delay_minutes else None
        )
        return {
            "job_id": job_id,
            "status": JobStatus.pending,
            "retry_time": retry_time,
            "scheduled": bool(delay_minutes),
            "cleared_failed_attempts": deleted,
        }

    async def bulk_retry_jobs(
        self, job_ids: Iterable[uuid.UUID], force: bool = False
    ) -> Dict[str, Any]:
        results = []
        for job_id in job_ids:
            try:
                outcome = await self.manual_retry(job_id, force=force)
                results.append({"job_id": job_id, "success": True, "retry_time": outcome["retry_time"]})
            except MigrationError as e:
                results.append({"job_id": job_id, "success": False, "error": e.message})
        succeeded = sum(1 for r in results if r["success"])
        return {
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    async def bulk_retry_analysis(
        self,
        plan_id: Optional[uuid.UUID] = None,
        job_ids: Optional[Iterable[uuid.UUID]] = None,
        max_retries: int = 3,
        batch_size: int = 50,
        bypass_date_check: bool = False,
        retry_delay_minutes: int = 0,
    ) -> Dict[str, Any]:
        """Plan a bulk retry without executing anything."""
        jobs = await ErrorHandlerService(self.db).find_target_jobs(job_ids, plan_id)
        planned = []
        for job in jobs:
            retryable = await self.attempts.get_failed_attempts_for_retry(job.id, max_retries)
            planned.append({
                "job_id": job.id,
                "plan_id": job.plan_id,
                "job_type": job.job_type,
                "status": job.status,
                "retryable_attempts": len(retryable),
            })
        total = sum(item["retryable_attempts"] for item in planned)
        batches = math.ceil(total / batch_size) if total else 0
        return {
            "jobs": planned,
            "total_retryable_attempts": total,
            "batch_size": batch_size,
            "estimated_batches": batches,
            "estimated_completion_minutes": batches * MINUTES_PER_RETRY_BATCH + retry_delay_minutes,
            "max_retries": max_retries,
            "bypass_date_check": bypass_date_check,
            "retry_delay_minutes": retry_delay_minutes,
        }

    async def schedule_retry(
        self,
        job_id: uuid.UUID,
        strategy: RetryStrategy = RetryStrategy.immediate,
        delay_hours: float = 1,
        scheduled_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create a fresh PENDING job for the same plan and type, due later."""
        job = await self.jobs.get_job(job_id)
        if job.status in ACTIVE_JOB_STATUSES:
            raise InvalidStateError("Cannot schedule a retry for a job that is still active")

        now = get_current_utc_datetime()
        if strategy == RetryStrategy.immediate:
            run_at = now + IMMEDIATE_RETRY_DELAY
        elif strategy == RetryStrategy.delayed:
            run_at = now + timedelta(hours=delay_hours)
        else:
            run_at = ensure_utc(scheduled_time)
            if run_at is None:
                raise ValidationError("scheduled_time is required for the scheduled strategy")
            if run_at <= now:
                raise ValidationError("scheduled_time must be in the future")

        new_job = await self.jobs.create_job(
            job.plan_id,
            job.job_type,
            batch_size=job.batch_size,
            bypass_date_check=bool(job.bypass_date_check),
            notice_period_days=job.notice_period_days,
            scheduled_for=run_at,
        )
        logger.info(f"Scheduled {strategy.value} retry of job {job_id} as {new_job.id} at {run_at}")
        return {
            "original_job_id": job_id,
            "new_job_id": new_job.id,
            "strategy": strategy,
            "scheduled_for": run_at,
        }

    # Emergency stop

    async def emergency_stop(self, reason: str, stopped_by: Optional[str] = None) -> Dict[str, Any]:
        """Cancel every PENDING/RUNNING job; one failure never aborts the sweep."""
        rows = await self.db.execute(
            select(MigrationJob.id).where(MigrationJob.status.in_(ACTIVE_JOB_STATUSES))
        )
        job_ids = list(rows.scalars().all())

        stopped: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for job_id in job_ids:
            try:
                job = await self.jobs.cancel_job(
                    job_id, reason=f"Emergency stop: {reason}", notify=False
                )
                stopped.append({
                    "job_id": job.id,
                    "plan_id": job.plan_id,
                    "job_type": job.job_type,
                    "success_count": job.success_count,
                })
            except Exception as e:
                await self.db.rollback()
                _, message = categorize_exception(e)
                logger.error(f"Emergency stop could not cancel job {job_id}: {message}")
                errors.append({"job_id": job_id, "error": message})

        stopped_at = get_current_utc_datetime()
        logger.warning(
            f"🛑 Emergency stop by {stopped_by or 'system'}: {len(stopped)} jobs cancelled "
            f"({len(errors)} errors). Reason: {reason}"
        )
        await admin_notifications.notify_emergency_stop(
            self.db,
            stopped_job_ids=[item["job_id"] for item in stopped],
            reason=reason,
            stopped_by=stopped_by,
        )
        return {
            "stopped_jobs": stopped,
            "errors": errors,
            "reason": reason,
            "stopped_by": stopped_by,
            "stopped_at": stopped_at,
        }

    # Statistics

    async def _window_stats(self, since: datetime) -> Dict[str, Any]:
        rows = await self.db.execute(
            select(MigrationJob.status, func.count(MigrationJob.id))
            .where(MigrationJob.created_at >= since)
            .group_by(MigrationJob.status)
        )
        counts = {JobStatus(status).value: count for status, count in rows.all()}
        completed = counts.get(JobStatus.completed.value, 0)
        failed = counts.get(JobStatus.failed.value, 0)
        finished = completed + failed
        return {
            "total_jobs": sum(counts.values()),
            "completed": completed,
            "failed": failed,
            "success_rate": round(completed / finished, 3) if finished else None,
        }

    async def get_retry_statistics(self) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        last_24h = await self._window_stats(now - timedelta(hours=24))
        last_7d = await self._window_stats(now - timedelta(days=7))

        retryable = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(
                    JobAttempt.success.is_(False),
                    JobAttempt.finalized_at.is_not(None),
                    JobAttempt.attempt_number < AUTO_RETRY_MAX_FAILED,
                    JobAttempt.created_at >= now - timedelta(days=7),
                )
            )
        ).scalar_one()

        rate = last_24h["success_rate"]
        if rate is None:
            health = HealthStatus.healthy
        elif rate < 0.3:
            health = HealthStatus.critical
        elif rate < 0.6:
            health = HealthStatus.warning
        else:
            health = HealthStatus.healthy

        return {
            "last_24h": last_24h,
            "last_7d": last_7d,
            "retryable_attempts_7d": retryable,
            "health": health,
        }
