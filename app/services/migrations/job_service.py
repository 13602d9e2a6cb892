"""Migration job lifecycle: create, start, complete, cancel and query.

State machine::

    pending -> running -> completed | failed
    pending | running -> cancelled

Transitions into ``running`` and out of it are conditional UPDATEs so two
workers can never both start (or both finish) the same job. A caller that
runs a job inline creates it already ``running`` (``claim=True``) so the
dispatcher, which only starts PENDING jobs, cannot take it first. Moving a
failed job back out of ``failed`` belongs to the retry service only.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidStateError, NotFoundError
from app.core.logging_config import get_logger
from app.models.job_attempt import JobAttempt
from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.schemas.admin.migrations import JobAttemptOut, MigrationJobOut
from app.services.migrations.eligibility import count_eligible
from app.services.notifications import admin_notifications
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import ACTIVE_JOB_STATUSES, JobStatus, JobType

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
DETAIL_ATTEMPT_LIMIT = 100
RECENT_JOBS_LIMIT = 10
PLAN_JOBS_LIMIT = 50
RECENT_FAILURE_WINDOW = timedelta(hours=1)


@dataclass
class JobOutcome:
    success: bool
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    error_message: Optional[str] = None


def job_to_dict(job: MigrationJob, **extra: Any) -> Dict[str, Any]:
    data = MigrationJobOut.model_validate(job).model_dump()
    data.update(extra)
    return data


def attempt_to_dict(attempt: JobAttempt) -> Dict[str, Any]:
    return JobAttemptOut.model_validate(attempt).model_dump()


class MigrationJobService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_job(self, job_id: uuid.UUID) -> MigrationJob:
        job = await self.db.get(MigrationJob, job_id)
        if job is None:
            raise NotFoundError(f"Migration job {job_id} not found")
        # Status and counters are written with bulk UPDATEs; never trust the identity map
        await self.db.refresh(job)
        return job

    async def _get_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self.db.get(Plan, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    async def create_job(
        self,
        plan_id: uuid.UUID,
        job_type: JobType,
        total_count: Optional[int] = None,
        *,
        batch_size: Optional[int] = None,
        bypass_date_check: bool = False,
        notice_period_days: Optional[float] = None,
        scheduled_for: Optional[datetime] = None,
        claim: bool = False,
    ) -> MigrationJob:
        """Create a job, sizing it to the eligible population if no count is given.

        Jobs are created PENDING for the dispatcher. With ``claim`` the caller
        runs the job itself, so it is inserted already RUNNING and the
        dispatcher never sees it.
        """
        await self._get_plan(plan_id)

        if total_count is None:
            total_count = await count_eligible(
                self.db, job_type, plan_id, get_current_utc_datetime(), bypass_date_check
            )
            if batch_size:
                total_count = min(total_count, batch_size)

        job = MigrationJob(
            plan_id=plan_id,
            job_type=job_type,
            status=JobStatus.running if claim else JobStatus.pending,
            started_at=get_current_utc_datetime() if claim else None,
            total_count=total_count,
            success_count=0,
            failed_count=0,
            batch_size=batch_size,
            bypass_date_check=bypass_date_check,
            notice_period_days=notice_period_days,
            scheduled_for=scheduled_for,
        )
        self.db.add(job)
        await self.db.commit()
        await self.db.refresh(job)
        state = "running" if claim else "pending"
        logger.info(
            f"Created {state} {job_type.value} job {job.id} for plan {plan_id} (total={total_count})"
        )
        return job

    async def start_job(self, job_id: uuid.UUID) -> MigrationJob:
        """PENDING -> RUNNING as a single conditional update."""
        now = get_current_utc_datetime()
        result = await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id, MigrationJob.status == JobStatus.pending)
            .values(status=JobStatus.running, started_at=now, completed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        job = await self.get_job(job_id)
        if result.rowcount == 0:
            raise InvalidStateError(
                f"Job {job_id} cannot be started from status '{job.status.value}'"
            )
        logger.info(f"🚀 Started {job.job_type.value} job {job_id}")
        return job

    async def complete_job(self, job_id: uuid.UUID, outcome: JobOutcome) -> bool:
        """RUNNING -> COMPLETED/FAILED.

        Returns False when the job was cancelled while running; the
        cancellation stands and only the counters are brought up to date.
        """
        now = get_current_utc_datetime()
        status = JobStatus.completed if outcome.success else JobStatus.failed
        result = await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id, MigrationJob.status == JobStatus.running)
            .values(
                status=status,
                completed_at=now,
                success_count=outcome.succeeded,
                failed_count=outcome.failed,
                error_message=None if outcome.success else outcome.error_message,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        job = await self.get_job(job_id)
        if result.rowcount == 0:
            if job.status == JobStatus.cancelled:
                await self.db.execute(
                    update(MigrationJob)
                    .where(MigrationJob.id == job_id)
                    .values(success_count=outcome.succeeded, failed_count=outcome.failed)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
                await self.db.refresh(job)
                logger.info(
                    f"Job {job_id} was cancelled before completion "
                    f"({outcome.succeeded} succeeded, {outcome.failed} failed)"
                )
                return False
            raise InvalidStateError(
                f"Job {job_id} cannot be completed from status '{job.status.value}'"
            )

        logger.info(
            f"Job {job_id} finished as {status.value}: "
            f"{outcome.succeeded} succeeded, {outcome.failed} failed of {outcome.processed} processed"
        )
        return True

    async def cancel_job(
        self,
        job_id: uuid.UUID,
        reason: Optional[str] = None,
        notify: bool = True,
    ) -> MigrationJob:
        job = await self.get_job(job_id)
        if job.status == JobStatus.completed:
            raise InvalidStateError("Cannot cancel a completed job")
        if job.status not in ACTIVE_JOB_STATUSES:
            raise InvalidStateError(f"Job is already {job.status.value}")

        result = await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id, MigrationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=JobStatus.cancelled,
                completed_at=get_current_utc_datetime(),
                error_message=f"Cancelled: {reason}" if reason else "Cancelled",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(job)
        if result.rowcount == 0:
            raise InvalidStateError(f"Job is already {job.status.value}")

        logger.warning(
            f"Cancelled job {job_id} ({job.success_count} migrated before cancellation)"
            + (f": {reason}" if reason else "")
        )

        if notify:
            plan = await self.db.get(Plan, job.plan_id)
            await admin_notifications.notify_job_cancelled(
                self.db,
                job_id=job.id,
                plan_id=job.plan_id,
                plan_name=plan.name if plan else "Unknown",
                migrated_before_cancel=job.success_count or 0,
                reason=reason,
            )
        return job

    async def is_cancelled(self, job_id: uuid.UUID) -> bool:
        """Fresh read of the job status, bypassing the identity map."""
        status = (
            await self.db.execute(select(MigrationJob.status).where(MigrationJob.id == job_id))
        ).scalar_one_or_none()
        return status == JobStatus.cancelled

    # Queries

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        plan_id: Optional[uuid.UUID] = None,
        job_type: Optional[JobType] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Dict[str, Any]:
        filters = []
        if status:
            filters.append(MigrationJob.status == status)
        if plan_id:
            filters.append(MigrationJob.plan_id == plan_id)
        if job_type:
            filters.append(MigrationJob.job_type == job_type)

        total = (
            await self.db.execute(select(func.count(MigrationJob.id)).where(*filters))
        ).scalar_one()
        rows = await self.db.execute(
            select(MigrationJob, Plan.name)
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .where(*filters)
            .order_by(MigrationJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        jobs = [job_to_dict(job, plan_name=plan_name) for job, plan_name in rows.all()]
        return {
            "jobs": jobs,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(jobs) < total,
        }

    async def get_job_details(self, job_id: uuid.UUID) -> Dict[str, Any]:
        job = await self.get_job(job_id)
        plan = await self.db.get(Plan, job.plan_id)
        attempts = await self.db.execute(
            select(JobAttempt)
            .where(JobAttempt.job_id == job_id)
            .order_by(JobAttempt.created_at.desc())
            .limit(DETAIL_ATTEMPT_LIMIT)
        )
        return {
            "job": job_to_dict(job, plan_name=plan.name if plan else None),
            "attempts": [attempt_to_dict(a) for a in attempts.scalars().all()],
            "progress_percentage": job.progress_percentage,
        }

    async def get_jobs_by_plan(self, plan_id: uuid.UUID) -> List[Dict[str, Any]]:
        await self._get_plan(plan_id)
        rows = await self.db.execute(
            select(MigrationJob)
            .where(MigrationJob.plan_id == plan_id)
            .order_by(MigrationJob.created_at.desc())
            .limit(PLAN_JOBS_LIMIT)
        )
        return [job_to_dict(job) for job in rows.scalars().all()]

    async def get_job_statistics(self) -> Dict[str, Any]:
        rows = await self.db.execute(
            select(MigrationJob.status, func.count(MigrationJob.id)).group_by(MigrationJob.status)
        )
        by_status = {status.value: 0 for status in JobStatus}
        for status, count in rows.all():
            by_status[JobStatus(status).value] = count
        total = sum(by_status.values())

        recent = await self.db.execute(
            select(MigrationJob, Plan.name)
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .order_by(MigrationJob.created_at.desc())
            .limit(RECENT_JOBS_LIMIT)
        )
        return {
            "total_jobs": total,
            **{f"{name}_jobs": count for name, count in by_status.items()},
            "success_rate": round(by_status["completed"] / total * 100, 1) if total else 0,
            "recent_jobs": [job_to_dict(job, plan_name=name) for job, name in recent.all()],
        }

    async def get_active_jobs(self) -> List[Dict[str, Any]]:
        since = get_current_utc_datetime() - RECENT_FAILURE_WINDOW
        failures = (
            select(JobAttempt.job_id, func.count(JobAttempt.id).label("recent_failures"))
            .where(
                JobAttempt.success.is_(False),
                JobAttempt.finalized_at.is_not(None),
                JobAttempt.created_at >= since,
            )
            .group_by(JobAttempt.job_id)
            .subquery()
        )
        rows = await self.db.execute(
            select(MigrationJob, Plan.name, func.coalesce(failures.c.recent_failures, 0))
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .outerjoin(failures, failures.c.job_id == MigrationJob.id)
            .where(MigrationJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(MigrationJob.created_at.asc())
        )
        return [
            job_to_dict(job, plan_name=plan_name, recent_failures=int(recent_failures))
            for job, plan_name, recent_failures in rows.all()
        ]
