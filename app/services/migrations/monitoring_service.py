"""Read-only views for the admin dashboard: progress, health and alerts."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.services.migrations.job_service import MigrationJobService, job_to_dict
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime, minutes_between
from app.utils.enums import (
    ACTIVE_JOB_STATUSES,
    AlertSeverity,
    HealthStatus,
    JobStatus,
    JobType,
    SubscriptionStatus,
)

STUCK_JOB_AFTER = timedelta(hours=2)
MAX_HEALTHY_ACTIVE_JOBS = 10
CRITICAL_FAILURE_RATE = 0.5
ALERT_FAILURE_RATE = 0.3
ALERT_MIN_PROCESSED = 10


def current_step(job: MigrationJob) -> str:
    if job.status == JobStatus.pending:
        return "Waiting to start"
    if job.status == JobStatus.running:
        return "Sending notices" if job.job_type == JobType.notice else "Migrating subscriptions"
    if job.status == JobStatus.completed:
        return "Completed successfully"
    if job.status == JobStatus.failed:
        return "Failed with errors"
    return "Cancelled"


def estimate_completion(job: MigrationJob, now) -> Optional[Dict[str, Any]]:
    """Project the finish time from the processing rate so far."""
    started = ensure_utc(job.started_at)
    processed = job.processed_count
    if job.status != JobStatus.running or started is None or processed == 0:
        return None
    elapsed = minutes_between(started, now)
    if elapsed <= 0:
        return None
    per_minute = processed / elapsed
    remaining = max((job.total_count or 0) - processed, 0)
    minutes_left = remaining / per_minute
    return {
        "rate_per_minute": round(per_minute, 2),
        "remaining": remaining,
        "estimated_minutes_remaining": round(minutes_left, 1),
        "estimated_completion_at": now + timedelta(minutes=minutes_left),
    }


def failure_rate(job: MigrationJob) -> float:
    processed = job.processed_count
    return (job.failed_count or 0) / processed if processed else 0.0


class MigrationMonitoringService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.jobs = MigrationJobService(db)

    async def get_active_jobs(self) -> List[tuple[MigrationJob, str]]:
        rows = await self.db.execute(
            select(MigrationJob, Plan.name)
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .where(MigrationJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(MigrationJob.created_at.asc())
        )
        return list(rows.all())

    async def get_stuck_jobs(self, now) -> List[Dict[str, Any]]:
        rows = await self.db.execute(
            select(MigrationJob, Plan.name)
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .where(
                MigrationJob.status == JobStatus.running,
                MigrationJob.started_at < now - STUCK_JOB_AFTER,
            )
        )
        return [
            {
                "job_id": str(job.id),
                "plan_name": plan_name,
                "job_type": job.job_type.value,
                "running_minutes": round(minutes_between(ensure_utc(job.started_at), now)),
            }
            for job, plan_name in rows.all()
        ]

    async def get_dashboard(self) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        statistics = await self.jobs.get_job_statistics()

        grandfathered = (
            await self.db.execute(
                select(func.count(Subscription.id)).where(
                    Subscription.is_grandfathered.is_(True),
                    Subscription.status == SubscriptionStatus.active,
                )
            )
        ).scalar_one()

        active = []
        for job, plan_name in await self.get_active_jobs():
            active.append(job_to_dict(
                job,
                plan_name=plan_name,
                progress_percentage=job.progress_percentage,
                current_step=current_step(job),
                estimate=estimate_completion(job, now),
            ))

        return {
            "overview": statistics,
            "grandfathered_subscriptions": grandfathered,
            "active_jobs": active,
            "generated_at": now,
        }

    async def get_system_health(self) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        issues: List[Dict[str, Any]] = []
        status = HealthStatus.healthy

        stuck = await self.get_stuck_jobs(now)
        if stuck:
            status = HealthStatus.warning
            issues.append({
                "severity": AlertSeverity.warning,
                "message": f"{len(stuck)} job(s) running for more than 2 hours",
                "jobs": stuck,
            })

        day_ago = now - timedelta(hours=24)
        rows = await self.db.execute(
            select(
                func.coalesce(func.sum(MigrationJob.success_count), 0),
                func.coalesce(func.sum(MigrationJob.failed_count), 0),
            ).where(MigrationJob.created_at >= day_ago)
        )
        succeeded, failed = rows.one()
        processed = int(succeeded) + int(failed)
        rate = int(failed) / processed if processed else 0.0
        if rate > CRITICAL_FAILURE_RATE:
            status = HealthStatus.critical
            issues.append({
                "severity": AlertSeverity.critical,
                "message": f"Failure rate over the last 24 hours is {rate:.0%}",
            })

        active = await self.get_active_jobs()
        if len(active) > MAX_HEALTHY_ACTIVE_JOBS:
            if status == HealthStatus.healthy:
                status = HealthStatus.warning
            issues.append({
                "severity": AlertSeverity.warning,
                "message": f"{len(active)} jobs are active at once",
            })

        return {
            "status": status,
            "issues": issues,
            "metrics": {
                "active_jobs": len(active),
                "stuck_jobs": len(stuck),
                "processed_24h": processed,
                "failure_rate_24h": round(rate, 3),
            },
            "checked_at": now,
        }

    async def get_job_progress(self, job_id: uuid.UUID) -> Dict[str, Any]:
        job = await self.jobs.get_job(job_id)
        now = get_current_utc_datetime()
        return {
            "job_id": job.id,
            "status": job.status,
            "job_type": job.job_type,
            "total_count": job.total_count,
            "success_count": job.success_count,
            "failed_count": job.failed_count,
            "processed_count": job.processed_count,
            "progress_percentage": job.progress_percentage,
            "current_step": current_step(job),
            "estimate": estimate_completion(job, now),
            "error_message": job.error_message,
        }

    async def get_alerts(self, severity: Optional[AlertSeverity] = None) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        alerts: List[Dict[str, Any]] = []

        for item in await self.get_stuck_jobs(now):
            alerts.append({
                "severity": AlertSeverity.warning,
                "type": "stuck_job",
                "job_id": item["job_id"],
                "message": (
                    f"{item['job_type'].title()} job for '{item['plan_name']}' has been running "
                    f"for {item['running_minutes']} minutes"
                ),
            })

        for job, plan_name in await self.get_active_jobs():
            rate = failure_rate(job)
            if job.processed_count > ALERT_MIN_PROCESSED and rate > ALERT_FAILURE_RATE:
                alerts.append({
                    "severity": AlertSeverity.error,
                    "type": "high_failure_rate",
                    "job_id": str(job.id),
                    "message": (
                        f"Job for '{plan_name}' is failing {rate:.0%} of subscriptions "
                        f"({job.failed_count} of {job.processed_count})"
                    ),
                })

        if severity:
            alerts = [alert for alert in alerts if alert["severity"] == severity]

        summary = {level.value: 0 for level in AlertSeverity}
        for alert in alerts:
            summary[alert["severity"].value] += 1
        return {"alerts": alerts, "summary": summary, "total": len(alerts)}
