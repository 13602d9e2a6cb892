"""Failure classification, per-job error analysis and recovery recommendations."""

from __future__ import annotations

import uuid
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import MigrationError
from app.core.logging_config import get_logger
from app.models.job_attempt import JobAttempt
from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.services.migrations.job_service import MigrationJobService, job_to_dict
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime
from app.utils.enums import ErrorCategory, HealthStatus, JobStatus, JobType, RetryStrategy

logger = get_logger(__name__)

MANUAL_RETRY_MAX_AGE = timedelta(days=7)
MANUAL_RETRY_MAX_FAILED = 5
RECENT_JOBS_FOR_ANALYSIS = 10

# Checked in order; the first matching category wins
ERROR_KEYWORDS: Sequence[tuple[ErrorCategory, tuple[str, ...]]] = (
    (ErrorCategory.network, ("network", "timeout", "timed out", "connection", "econnreset")),
    (ErrorCategory.database, ("database", "sql", "constraint", "deadlock", "integrity")),
    (ErrorCategory.payment, ("stripe", "gateway", "payment", "billing", "card")),
    (ErrorCategory.validation, ("validation", "invalid", "missing", "not synced")),
    (ErrorCategory.permission, ("permission", "unauthorized", "forbidden", "api key")),
)

CATEGORY_RECOMMENDATIONS: Dict[ErrorCategory, str] = {
    ErrorCategory.network: "Check network connectivity and server resources",
    ErrorCategory.database: "Verify database connection and check for constraint violations",
    ErrorCategory.payment: "Check Stripe API connectivity and API key validity",
    ErrorCategory.validation: "Review input data and validation rules",
    ErrorCategory.permission: "Verify API permissions and authentication",
    ErrorCategory.other: "Review error logs and consider manual intervention",
}


def classify_error_message(message: Optional[str]) -> ErrorCategory:
    """Keyword fallback for failures that did not carry a category."""
    text = (message or "").lower()
    for category, keywords in ERROR_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.other


def categorize_exception(exc: BaseException) -> tuple[ErrorCategory, str]:
    """Decide the category of a failure at the point it is caught."""
    if isinstance(exc, MigrationError):
        return exc.category, exc.message
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, SQLAlchemyError):
        return ErrorCategory.database, message
    if isinstance(exc, TimeoutError):
        return ErrorCategory.network, message
    return classify_error_message(message), message


def estimate_retry_minutes(failed_attempts: int) -> int:
    return 30 + failed_attempts * 15


def can_job_be_retried(job: MigrationJob, failed_attempts: int, now: datetime) -> bool:
    """Manual-retry policy used for recommendations (force window, default cap)."""
    age = now - ensure_utc(job.created_at)
    return age <= MANUAL_RETRY_MAX_AGE and failed_attempts < MANUAL_RETRY_MAX_FAILED


def retry_recommendation(job: MigrationJob, failed_attempts: int, now: datetime) -> str:
    if failed_attempts >= MANUAL_RETRY_MAX_FAILED:
        return "Too many failed attempts. Manual intervention required."
    if now - ensure_utc(job.created_at) > MANUAL_RETRY_MAX_AGE:
        return "Job is too old to retry. Create a new migration job instead."
    if job.job_type == JobType.notice:
        return (
            "Notice jobs are never retried automatically. A manual retry only re-sends "
            "to subscriptions that have not received a notice yet."
        )
    return "Job can be retried. Consider checking the underlying issues first."


def recommend_strategy(success_rate: float, dominant: Optional[ErrorCategory]) -> Dict[str, Any]:
    """Map observed success rate and dominant error category to a retry strategy."""
    if success_rate > 80:
        return {
            "strategy": RetryStrategy.immediate,
            "confidence": 90,
            "estimated_success_rate": 85,
            "reasoning": "High historical success rate; failures look transient.",
        }
    if dominant == ErrorCategory.payment and success_rate <= 50:
        return {
            "strategy": RetryStrategy.delayed,
            "confidence": 40,
            "estimated_success_rate": 50,
            "reasoning": "Payment gateway errors dominate; give the gateway time to recover.",
        }
    return {
        "strategy": RetryStrategy.scheduled,
        "confidence": 60,
        "estimated_success_rate": 70,
        "reasoning": "Mixed results; schedule the retry outside peak hours.",
    }


def recovery_actions(
    success_rate: float, total_attempts: int, by_category: Dict[str, int]
) -> List[Dict[str, str]]:
    failed_total = sum(by_category.values())
    actions: List[Dict[str, str]] = []
    if total_attempts and success_rate < 50:
        actions.append({
            "priority": "high",
            "action": "Investigate root cause before retrying",
            "detail": f"Success rate is only {success_rate:.1f}%",
        })
    if failed_total:
        if by_category.get(ErrorCategory.payment.value, 0) / failed_total > 0.3:
            actions.append({
                "priority": "medium",
                "action": "Check Stripe API status and rate limits",
                "detail": "More than 30% of failures are payment errors",
            })
        if by_category.get(ErrorCategory.network.value, 0) / failed_total > 0.2:
            actions.append({
                "priority": "medium",
                "action": "Retry during off-peak hours",
                "detail": "More than 20% of failures are network errors",
            })
    if total_attempts > 100 and success_rate < 70:
        actions.append({
            "priority": "low",
            "action": "Reduce batch size for the retry",
            "detail": "Large batches with a low success rate amplify gateway pressure",
        })
    return actions


class ErrorHandlerService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.jobs = MigrationJobService(db)

    async def _failed_attempts(self, job_id: uuid.UUID) -> List[JobAttempt]:
        result = await self.db.execute(
            select(JobAttempt)
            .where(
                JobAttempt.job_id == job_id,
                JobAttempt.success.is_(False),
                JobAttempt.finalized_at.is_not(None),
            )
            .order_by(JobAttempt.created_at.desc())
        )
        return list(result.scalars().all())

    async def analyze_job_errors(self, job_id: uuid.UUID) -> Dict[str, Any]:
        job = await self.jobs.get_job(job_id)
        now = get_current_utc_datetime()
        attempts = await self._failed_attempts(job_id)

        categorized = []
        grouped: Dict[str, int] = Counter()
        for attempt in attempts:
            category = attempt.error_category or classify_error_message(attempt.error_message)
            grouped[category.value] += 1
            categorized.append({
                "attempt_id": attempt.id,
                "subscription_id": attempt.subscription_id,
                "attempt_number": attempt.attempt_number,
                "error_message": attempt.error_message,
                "category": category,
                "created_at": attempt.created_at,
            })

        failed = len(attempts)
        can_retry = can_job_be_retried(job, failed, now)
        return {
            "job": job_to_dict(job),
            "total_failed_attempts": failed,
            "errors_by_category": dict(grouped),
            "errors": categorized,
            "can_retry": can_retry,
            "recommendation": retry_recommendation(job, failed, now),
            "estimated_retry_minutes": estimate_retry_minutes(failed) if can_retry else None,
            "category_recommendations": {
                name: CATEGORY_RECOMMENDATIONS[ErrorCategory(name)] for name in grouped
            },
        }

    async def get_failed_jobs_for_retry(self, limit: int = 10) -> List[Dict[str, Any]]:
        now = get_current_utc_datetime()
        result = await self.db.execute(
            select(MigrationJob, Plan.name)
            .join(Plan, Plan.id == MigrationJob.plan_id)
            .where(
                MigrationJob.status == JobStatus.failed,
                MigrationJob.created_at >= now - timedelta(hours=24),
            )
            .order_by(MigrationJob.created_at.desc())
            .limit(limit)
        )
        jobs = []
        for job, plan_name in result.all():
            failed = len(await self._failed_attempts(job.id))
            jobs.append(job_to_dict(
                job,
                plan_name=plan_name,
                failed_attempts=failed,
                can_retry=can_job_be_retried(job, failed, now),
                recommendation=retry_recommendation(job, failed, now),
            ))
        return jobs

    async def get_system_error_summary(self) -> Dict[str, Any]:
        now = get_current_utc_datetime()
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)

        failed_jobs_24h = (
            await self.db.execute(
                select(func.count(MigrationJob.id)).where(
                    MigrationJob.status == JobStatus.failed,
                    MigrationJob.created_at >= day_ago,
                )
            )
        ).scalar_one()
        attempts_24h = (
            await self.db.execute(
                select(JobAttempt.success, func.count(JobAttempt.id))
                .where(JobAttempt.created_at >= day_ago, JobAttempt.finalized_at.is_not(None))
                .group_by(JobAttempt.success)
            )
        ).all()
        by_outcome = {bool(success): count for success, count in attempts_24h}
        failed_attempts_24h = by_outcome.get(False, 0)
        total_attempts_24h = failed_attempts_24h + by_outcome.get(True, 0)
        error_rate = failed_attempts_24h / total_attempts_24h if total_attempts_24h else 0.0

        common = await self.db.execute(
            select(JobAttempt.error_message, JobAttempt.error_category, func.count(JobAttempt.id))
            .where(
                JobAttempt.success.is_(False),
                JobAttempt.finalized_at.is_not(None),
                JobAttempt.created_at >= week_ago,
            )
            .group_by(JobAttempt.error_message, JobAttempt.error_category)
            .order_by(func.count(JobAttempt.id).desc())
            .limit(10)
        )
        common_errors = [
            {
                "error_message": message,
                "category": category or classify_error_message(message),
                "count": count,
            }
            for message, category, count in common.all()
        ]

        # Bucketed in Python; date_trunc is not portable across backends
        created = await self.db.execute(
            select(JobAttempt.created_at).where(
                JobAttempt.success.is_(False),
                JobAttempt.finalized_at.is_not(None),
                JobAttempt.created_at >= week_ago,
            )
        )
        trends: Dict[str, int] = defaultdict(int)
        for (created_at,) in created.all():
            trends[ensure_utc(created_at).date().isoformat()] += 1

        if failed_jobs_24h > 10:
            health = HealthStatus.critical
        elif failed_jobs_24h > 5 or error_rate > 0.5:
            health = HealthStatus.warning
        else:
            health = HealthStatus.healthy

        return {
            "failed_jobs_24h": failed_jobs_24h,
            "failed_attempts_24h": failed_attempts_24h,
            "total_attempts_24h": total_attempts_24h,
            "error_rate": round(error_rate, 3),
            "common_errors": common_errors,
            "daily_trends": [{"date": day, "failures": trends[day]} for day in sorted(trends)],
            "system_health": health,
        }

    async def find_target_jobs(
        self,
        job_ids: Optional[Iterable[uuid.UUID]] = None,
        plan_id: Optional[uuid.UUID] = None,
    ) -> List[MigrationJob]:
        stmt = select(MigrationJob)
        if job_ids:
            stmt = stmt.where(MigrationJob.id.in_(list(job_ids)))
        elif plan_id:
            stmt = stmt.where(
                MigrationJob.plan_id == plan_id,
                MigrationJob.status.in_((JobStatus.completed, JobStatus.failed)),
            )
        else:
            stmt = stmt.order_by(MigrationJob.created_at.desc()).limit(RECENT_JOBS_FOR_ANALYSIS)
        return list((await self.db.execute(stmt)).scalars().all())

    async def recommend_recovery(
        self,
        job_ids: Optional[Iterable[uuid.UUID]] = None,
        plan_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        jobs = await self.find_target_jobs(job_ids, plan_id)
        ids = [job.id for job in jobs]

        outcome_rows = []
        failure_rows = []
        if ids:
            outcome_rows = (
                await self.db.execute(
                    select(JobAttempt.success, func.count(JobAttempt.id))
                    .where(JobAttempt.job_id.in_(ids), JobAttempt.finalized_at.is_not(None))
                    .group_by(JobAttempt.success)
                )
            ).all()
            failure_rows = (
                await self.db.execute(
                    select(JobAttempt.error_category, JobAttempt.error_message).where(
                        JobAttempt.job_id.in_(ids),
                        JobAttempt.success.is_(False),
                        JobAttempt.finalized_at.is_not(None),
                    )
                )
            ).all()

        outcomes = {bool(success): count for success, count in outcome_rows}
        total = outcomes.get(True, 0) + outcomes.get(False, 0)
        success_rate = outcomes.get(True, 0) / total * 100 if total else 0.0

        by_category: Dict[str, int] = Counter(
            (category or classify_error_message(message)).value
            for category, message in failure_rows
        )
        dominant = ErrorCategory(max(by_category, key=by_category.get)) if by_category else None

        return {
            "jobs_analyzed": len(ids),
            "total_attempts": total,
            "success_rate": round(success_rate, 1),
            "errors_by_category": dict(by_category),
            "dominant_error_category": dominant,
            **recommend_strategy(success_rate, dominant),
            "actions": recovery_actions(success_rate, total, by_category),
        }
