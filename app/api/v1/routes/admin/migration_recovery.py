"""Admin endpoints for failure recovery and migration monitoring."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.response import success_response
from app.core.security import require_roles
from app.db.deps import get_db
from app.models.user import Role, User
from app.schemas.admin.migrations import (
    BulkRetryAnalysisRequest,
    BulkRetryRequest,
    EmergencyStopRequest,
    ScheduleRetryRequest,
)
from app.services.migrations.error_handler import ErrorHandlerService
from app.services.migrations.monitoring_service import MigrationMonitoringService
from app.services.migrations.retry_service import MigrationRetryService
from app.utils.enums import AlertSeverity

admin_guard = require_roles(Role.admin)

router = APIRouter(
    prefix="/admin/migrations",
    tags=["admin-migrations"],
    dependencies=[Depends(admin_guard)],
)


# Recovery


@router.get("/recovery/failed-jobs")
async def get_failed_jobs(
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    jobs = await ErrorHandlerService(db).get_failed_jobs_for_retry(limit)
    return success_response("Failed jobs fetched", data={"jobs": jobs, "count": len(jobs)})


@router.get("/recovery/system-summary")
async def get_system_error_summary(db: AsyncSession = Depends(get_db)):
    data = await ErrorHandlerService(db).get_system_error_summary()
    return success_response("System error summary", data=data)


@router.get("/recovery/recommendations")
async def get_recovery_recommendations(
    job_ids: Optional[List[UUID]] = Query(None),
    plan_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    data = await ErrorHandlerService(db).recommend_recovery(job_ids, plan_id)
    return success_response("Recovery recommendations", data=data)


@router.post("/recovery/bulk-retry")
async def bulk_retry_jobs(request: BulkRetryRequest, db: AsyncSession = Depends(get_db)):
    data = await MigrationRetryService(db).bulk_retry_jobs(request.job_ids, force=request.force)
    return success_response(
        f"{data['succeeded']} of {data['total']} jobs queued for retry", data=data
    )


@router.post("/recovery/bulk-retry/analysis")
async def analyze_bulk_retry(
    request: BulkRetryAnalysisRequest, db: AsyncSession = Depends(get_db)
):
    data = await MigrationRetryService(db).bulk_retry_analysis(
        plan_id=request.plan_id,
        job_ids=request.job_ids,
        max_retries=request.max_retries,
        batch_size=request.batch_size,
        bypass_date_check=request.bypass_date_check,
        retry_delay_minutes=request.retry_delay_minutes,
    )
    return success_response("Bulk retry analysis", data=data)


@router.post("/jobs/{job_id}/schedule-retry")
async def schedule_retry(
    job_id: UUID,
    request: Optional[ScheduleRetryRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    request = request or ScheduleRetryRequest()
    data = await MigrationRetryService(db).schedule_retry(
        job_id,
        strategy=request.strategy,
        delay_hours=request.delay_hours,
        scheduled_time=request.scheduled_time,
    )
    return success_response("Retry scheduled", data=data, status_code=201)


@router.post("/recovery/emergency-stop")
async def emergency_stop(
    request: EmergencyStopRequest,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(admin_guard),
):
    data = await MigrationRetryService(db).emergency_stop(
        request.reason, stopped_by=getattr(current_admin, "email", None)
    )
    return success_response(f"Stopped {len(data['stopped_jobs'])} jobs", data=data)


@router.get("/recovery/statistics")
async def get_retry_statistics(db: AsyncSession = Depends(get_db)):
    data = await MigrationRetryService(db).get_retry_statistics()
    return success_response("Retry statistics", data=data)


# Monitoring


@router.get("/monitoring/dashboard")
async def get_dashboard(db: AsyncSession = Depends(get_db)):
    data = await MigrationMonitoringService(db).get_dashboard()
    return success_response("Migration dashboard", data=data)


@router.get("/monitoring/health")
async def get_system_health(db: AsyncSession = Depends(get_db)):
    data = await MigrationMonitoringService(db).get_system_health()
    return success_response("System health", data=data)


@router.get("/monitoring/alerts")
async def get_alerts(
    severity: Optional[AlertSeverity] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    data = await MigrationMonitoringService(db).get_alerts(severity)
    return success_response("Migration alerts", data=data)
