"""Per-subscription attempt history for migration jobs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateError, NotFoundError
from app.core.logging_config import get_logger
from app.models.job_attempt import JobAttempt
from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import User
from app.services.migrations.job_service import attempt_to_dict, job_to_dict
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import ErrorCategory, JobStatus

logger = get_logger(__name__)

RETRY_BATCH_LIMIT = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_CLEANUP_DAYS = 30
MAX_PAGE_SIZE = 100


class JobAttemptService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_attempt(
        self,
        job_id: uuid.UUID,
        subscription_id: uuid.UUID,
        owner_id: uuid.UUID,
        attempt_number: Optional[int] = None,
    ) -> JobAttempt:
        """Record that work on one subscription is about to start.

        The attempt stays unfinalized until ``update_attempt`` is called.
        """
        # Column read, not db.get(): another session may have cancelled the job
        status = (
            await self.db.execute(select(MigrationJob.status).where(MigrationJob.id == job_id))
        ).scalar_one_or_none()
        if status is None:
            raise NotFoundError(f"Migration job {job_id} not found")
        if status != JobStatus.running:
            raise InvalidStateError(
                f"Cannot record attempts for job {job_id} in status '{JobStatus(status).value}'"
            )

        if attempt_number is None:
            prior = (
                await self.db.execute(
                    select(func.count(JobAttempt.id)).where(
                        JobAttempt.job_id == job_id,
                        JobAttempt.subscription_id == subscription_id,
                    )
                )
            ).scalar_one()
            attempt_number = prior + 1

        attempt = JobAttempt(
            job_id=job_id,
            subscription_id=subscription_id,
            owner_id=owner_id,
            attempt_number=attempt_number,
            success=False,
        )
        self.db.add(attempt)
        await self.db.commit()
        await self.db.refresh(attempt)
        return attempt

    async def update_attempt(
        self,
        attempt_id: uuid.UUID,
        success: bool,
        error_message: Optional[str] = None,
        retry_after: Optional[datetime] = None,
        error_category: Optional[ErrorCategory] = None,
    ) -> JobAttempt:
        """Finalize an attempt, then recompute its job's counters."""
        attempt = await self.db.get(JobAttempt, attempt_id)
        if attempt is None:
            raise NotFoundError(f"Job attempt {attempt_id} not found")

        attempt.success = success
        attempt.error_message = None if success else error_message
        attempt.error_category = None if success else (error_category or ErrorCategory.other)
        attempt.retry_after = None if success else retry_after
        attempt.finalized_at = get_current_utc_datetime()
        await self.db.commit()

        try:
            await self.recompute_job_counters(attempt.job_id)
        except SQLAlchemyError as e:
            # The attempt itself is final; counters converge on the next recompute
            logger.error(f"Failed to recompute counters for job {attempt.job_id}: {e}")
            await self.db.rollback()
        return attempt

    async def recompute_job_counters(self, job_id: uuid.UUID) -> Dict[str, int]:
        """Set success/failed counts from an aggregate over finalized attempts."""
        rows = await self.db.execute(
            select(JobAttempt.success, func.count(JobAttempt.id))
            .where(JobAttempt.job_id == job_id, JobAttempt.finalized_at.is_not(None))
            .group_by(JobAttempt.success)
        )
        counts = {bool(success): count for success, count in rows.all()}
        succeeded, failed = counts.get(True, 0), counts.get(False, 0)
        await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id)
            .values(success_count=succeeded, failed_count=failed)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return {"success_count": succeeded, "failed_count": failed}

    async def get_failed_attempts_for_retry(
        self, job_id: uuid.UUID, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> list[JobAttempt]:
        now = get_current_utc_datetime()
        result = await self.db.execute(
            select(JobAttempt)
            .where(
                JobAttempt.job_id == job_id,
                *self._retryable_filters(max_retries, now),
            )
            .order_by(JobAttempt.created_at.asc())
            .limit(RETRY_BATCH_LIMIT)
        )
        return list(result.scalars().all())

    @staticmethod
    def _retryable_filters(max_retries: int, now: datetime) -> list:
        return [
            JobAttempt.success.is_(False),
            JobAttempt.finalized_at.is_not(None),
            JobAttempt.attempt_number < max_retries,
            or_(JobAttempt.retry_after.is_(None), JobAttempt.retry_after <= now),
        ]

    async def get_attempt_statistics(
        self, job_id: uuid.UUID, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        total = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(JobAttempt.job_id == job_id)
            )
        ).scalar_one()
        success = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(
                    JobAttempt.job_id == job_id, JobAttempt.success.is_(True)
                )
            )
        ).scalar_one()
        failed = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(
                    JobAttempt.job_id == job_id,
                    JobAttempt.success.is_(False),
                    JobAttempt.finalized_at.is_not(None),
                )
            )
        ).scalar_one()
        retryable = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(
                    JobAttempt.job_id == job_id, *self._retryable_filters(max_retries, now)
                )
            )
        ).scalar_one()
        return {
            "job_id": job_id,
            "total_attempts": total,
            "successful_attempts": success,
            "failed_attempts": failed,
            "retryable_attempts": retryable,
            "success_rate": round(success / total * 100) if total else 0,
        }

    async def cleanup_old_attempts(
        self, job_id: uuid.UUID, older_than_days: int = DEFAULT_CLEANUP_DAYS
    ) -> int:
        """Delete successful attempts of a completed job older than the cutoff.

        Failed attempts are kept for error analysis.
        """
        job = await self.db.get(MigrationJob, job_id)
        if job is None:
            raise NotFoundError(f"Migration job {job_id} not found")
        if job.status != JobStatus.completed:
            raise InvalidStateError("Attempts can only be cleaned up for completed jobs")

        cutoff = get_current_utc_datetime() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(JobAttempt)
            .where(
                JobAttempt.job_id == job_id,
                JobAttempt.success.is_(True),
                JobAttempt.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        logger.info(f"Cleaned up {deleted} successful attempts for job {job_id} (cutoff {cutoff})")
        return deleted

    async def get_attempt_details(self, attempt_id: uuid.UUID) -> Dict[str, Any]:
        row = (
            await self.db.execute(
                select(JobAttempt, MigrationJob, Subscription, Plan.name, User.email)
                .join(MigrationJob, MigrationJob.id == JobAttempt.job_id)
                .join(Subscription, Subscription.id == JobAttempt.subscription_id)
                .join(Plan, Plan.id == MigrationJob.plan_id)
                .join(User, User.id == JobAttempt.owner_id)
                .where(JobAttempt.id == attempt_id)
            )
        ).first()
        if row is None:
            raise NotFoundError(f"Job attempt {attempt_id} not found")
        attempt, job, subscription, plan_name, owner_email = row
        return {
            "attempt": attempt_to_dict(attempt),
            "job": job_to_dict(job, plan_name=plan_name),
            "subscription": {
                "id": subscription.id,
                "status": subscription.status,
                "price_pence": subscription.price_pence,
                "original_price_pence": subscription.original_price_pence,
                "is_grandfathered": subscription.is_grandfathered,
                "migration_scheduled_at": subscription.migration_scheduled_at,
                "owner_email": owner_email,
            },
        }

    async def get_attempts_by_job(
        self, job_id: uuid.UUID, page: int = 1, limit: int = 50
    ) -> Dict[str, Any]:
        if await self.db.get(MigrationJob, job_id) is None:
            raise NotFoundError(f"Migration job {job_id} not found")
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))

        total = (
            await self.db.execute(
                select(func.count(JobAttempt.id)).where(JobAttempt.job_id == job_id)
            )
        ).scalar_one()
        rows = await self.db.execute(
            select(JobAttempt)
            .where(JobAttempt.job_id == job_id)
            .order_by(JobAttempt.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        return {
            "attempts": [attempt_to_dict(a) for a in rows.scalars().all()],
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        }

    async def delete_failed_attempts(self, job_id: uuid.UUID) -> int:
        """Remove failed (and never-finalized) attempts so a retry starts clean. Not committed."""
        result = await self.db.execute(
            delete(JobAttempt)
            .where(JobAttempt.job_id == job_id, JobAttempt.success.is_(False))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
