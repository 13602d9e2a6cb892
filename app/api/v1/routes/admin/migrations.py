"""Admin endpoints for price migration jobs, attempts and plan re-pricing.

Creating a NOTICE or MIGRATION batch only queues a PENDING job; the
background dispatcher executes it.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.gateway import get_payment_gateway
from app.core.response import success_response
from app.core.security import require_roles
from app.db.deps import get_db
from app.models.user import Role
from app.schemas.admin.migrations import (
    BulkMigrateRequest,
    CancelJobRequest,
    CreateJobRequest,
    ManualRetryRequest,
    MigrateSubscriptionRequest,
    NoticeRequest,
    PriceVersionRequest,
)
from app.services.migrations.attempt_service import JobAttemptService
from app.services.migrations.error_handler import ErrorHandlerService
from app.services.migrations.job_service import MigrationJobService, attempt_to_dict, job_to_dict
from app.services.migrations.monitoring_service import MigrationMonitoringService
from app.services.migrations.price_migration_service import PriceMigrationService
from app.services.migrations.retry_service import MigrationRetryService
from app.services.payments import PaymentGateway
from app.utils.enums import JobStatus, JobType

admin_guard = require_roles(Role.admin)

router = APIRouter(
    prefix="/admin/migrations",
    tags=["admin-migrations"],
    dependencies=[Depends(admin_guard)],
)


# Jobs


@router.get("/jobs")
async def list_migration_jobs(
    status: Optional[JobStatus] = Query(None),
    plan_id: Optional[UUID] = Query(None),
    job_type: Optional[JobType] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    data = await MigrationJobService(db).list_jobs(status, plan_id, job_type, limit, offset)
    return success_response("Migration jobs fetched", data=data)


@router.post("/jobs")
async def create_migration_job(request: CreateJobRequest, db: AsyncSession = Depends(get_db)):
    job = await MigrationJobService(db).create_job(
        request.plan_id, request.job_type, request.total_count
    )
    return success_response("Migration job created", data=job_to_dict(job), status_code=201)


@router.get("/jobs/active")
async def get_active_jobs(db: AsyncSession = Depends(get_db)):
    jobs = await MigrationJobService(db).get_active_jobs()
    return success_response("Active jobs fetched", data={"jobs": jobs, "count": len(jobs)})


@router.get("/jobs/statistics")
async def get_job_statistics(db: AsyncSession = Depends(get_db)):
    data = await MigrationJobService(db).get_job_statistics()
    return success_response("Job statistics fetched", data=data)


@router.get("/jobs/{job_id}")
async def get_job_details(job_id: UUID, db: AsyncSession = Depends(get_db)):
    data = await MigrationJobService(db).get_job_details(job_id)
    return success_response("Job details fetched", data=data)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: UUID,
    request: Optional[CancelJobRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    reason = request.reason if request else None
    job = await MigrationJobService(db).cancel_job(job_id, reason=reason)
    return success_response("Job cancelled", data=job_to_dict(job))


@router.post("/jobs/{job_id}/retry")
async def retry_job(
    job_id: UUID,
    request: Optional[ManualRetryRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    request = request or ManualRetryRequest()
    data = await MigrationRetryService(db).manual_retry(
        job_id,
        force=request.force,
        max_attempts=request.max_attempts,
        delay_minutes=request.delay_minutes,
    )
    msg = "Retry scheduled" if data["scheduled"] else "Job queued for retry"
    return success_response(msg, data=data)


@router.get("/jobs/{job_id}/attempts")
async def get_job_attempts(
    job_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    data = await JobAttemptService(db).get_attempts_by_job(job_id, page, limit)
    return success_response("Job attempts fetched", data=data)


@router.get("/jobs/{job_id}/attempts/retryable")
async def get_retryable_attempts(
    job_id: UUID,
    max_retries: int = Query(3, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
):
    await MigrationJobService(db).get_job(job_id)
    attempts = await JobAttemptService(db).get_failed_attempts_for_retry(job_id, max_retries)
    return success_response(
        "Retryable attempts fetched",
        data={"attempts": [attempt_to_dict(a) for a in attempts], "count": len(attempts)},
    )


@router.get("/jobs/{job_id}/attempts/statistics")
async def get_attempt_statistics(
    job_id: UUID,
    max_retries: int = Query(3, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
):
    await MigrationJobService(db).get_job(job_id)
    data = await JobAttemptService(db).get_attempt_statistics(job_id, max_retries)
    return success_response("Attempt statistics fetched", data=data)


@router.delete("/jobs/{job_id}/attempts")
async def cleanup_job_attempts(
    job_id: UUID,
    older_than_days: int = Query(30, ge=1),
    db: AsyncSession = Depends(get_db),
):
    deleted = await JobAttemptService(db).cleanup_old_attempts(job_id, older_than_days)
    return success_response(f"Removed {deleted} old attempts", data={"deleted": deleted})


@router.get("/jobs/{job_id}/analysis")
async def analyze_job_errors(job_id: UUID, db: AsyncSession = Depends(get_db)):
    data = await ErrorHandlerService(db).analyze_job_errors(job_id)
    return success_response("Job error analysis", data=data)


@router.get("/jobs/{job_id}/progress")
async def get_job_progress(job_id: UUID, db: AsyncSession = Depends(get_db)):
    data = await MigrationMonitoringService(db).get_job_progress(job_id)
    return success_response("Job progress fetched", data=data)


@router.get("/attempts/{attempt_id}")
async def get_attempt_details(attempt_id: UUID, db: AsyncSession = Depends(get_db)):
    data = await JobAttemptService(db).get_attempt_details(attempt_id)
    return success_response("Attempt details fetched", data=data)


# Plans


@router.post("/plans/{plan_id}/price-version")
async def create_price_version(
    plan_id: UUID,
    request: PriceVersionRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    data = await PriceMigrationService(db, gateway).create_new_price_version(
        plan_id, request.new_price_pence
    )
    return success_response(data["message"], data=data)


@router.post("/plans/{plan_id}/notices")
async def queue_migration_notices(
    plan_id: UUID,
    request: Optional[NoticeRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    request = request or NoticeRequest()
    job = await PriceMigrationService(db).queue_notice_job(plan_id, request.notice_period_days)
    return success_response("Notice job queued", data=job_to_dict(job), status_code=202)


@router.post("/plans/{plan_id}/bulk-migrate")
async def queue_bulk_migration(
    plan_id: UUID,
    request: Optional[BulkMigrateRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    request = request or BulkMigrateRequest()
    job = await PriceMigrationService(db).queue_bulk_migration(
        plan_id, request.batch_size, request.bypass_date_check
    )
    return success_response("Migration job queued", data=job_to_dict(job), status_code=202)


@router.get("/plans/{plan_id}/status")
async def get_plan_migration_status(plan_id: UUID, db: AsyncSession = Depends(get_db)):
    data = await PriceMigrationService(db).get_migration_status(plan_id)
    return success_response("Migration status fetched", data=data)


@router.get("/plans/{plan_id}/jobs")
async def get_plan_jobs(plan_id: UUID, db: AsyncSession = Depends(get_db)):
    jobs = await MigrationJobService(db).get_jobs_by_plan(plan_id)
    return success_response("Plan jobs fetched", data={"jobs": jobs, "count": len(jobs)})


# Subscriptions


@router.post("/subscriptions/{subscription_id}/migrate")
async def migrate_subscription(
    subscription_id: UUID,
    request: Optional[MigrateSubscriptionRequest] = None,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    request = request or MigrateSubscriptionRequest()
    data = await PriceMigrationService(db, gateway).migrate_customer(
        subscription_id, bypass_date_check=request.bypass_date_check
    )
    return success_response(data["message"], data=data)
