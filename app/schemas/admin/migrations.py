from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from app.utils.enums import ErrorCategory, JobStatus, JobType, RetryStrategy


ReasonStr = Annotated[str, StringConstraints(min_length=3, max_length=500, strip_whitespace=True)]


class MigrationJobOut(BaseModel):
    id: UUID
    plan_id: UUID
    job_type: JobType
    status: JobStatus
    total_count: int
    success_count: int
    failed_count: int
    progress_percentage: int
    error_message: Optional[str] = None
    batch_size: Optional[int] = None
    bypass_date_check: bool = False
    notice_period_days: Optional[float] = None
    scheduled_for: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class JobAttemptOut(BaseModel):
    id: UUID
    job_id: UUID
    subscription_id: UUID
    owner_id: UUID
    attempt_number: int
    success: bool
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    retry_after: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreateJobRequest(BaseModel):
    plan_id: UUID
    job_type: JobType
    total_count: Optional[int] = Field(default=None, ge=0)


class CancelJobRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ManualRetryRequest(BaseModel):
    force: bool = Field(default=False, description="Allow retrying jobs up to 7 days old")
    max_attempts: int = Field(default=5, ge=1, le=20)
    delay_minutes: Optional[int] = Field(default=None, ge=0, le=7 * 24 * 60)


class BulkRetryRequest(BaseModel):
    job_ids: List[UUID] = Field(min_length=1, max_length=100)
    force: bool = False


class BulkRetryAnalysisRequest(BaseModel):
    plan_id: Optional[UUID] = None
    job_ids: Optional[List[UUID]] = None
    max_retries: int = Field(default=3, ge=1, le=20)
    batch_size: int = Field(default=50, ge=1, le=500)
    bypass_date_check: bool = False
    retry_delay_minutes: int = Field(default=0, ge=0)


class ScheduleRetryRequest(BaseModel):
    strategy: RetryStrategy = RetryStrategy.immediate
    delay_hours: float = Field(default=1, gt=0, le=24 * 7)
    scheduled_time: Optional[datetime] = None


class EmergencyStopRequest(BaseModel):
    reason: ReasonStr


class PriceVersionRequest(BaseModel):
    new_price_pence: int


class NoticeRequest(BaseModel):
    notice_period_days: float = Field(default=30, description="Fractions of a day are allowed")


class BulkMigrateRequest(BaseModel):
    batch_size: int = Field(default=50, ge=1, le=500)
    bypass_date_check: bool = False


class MigrateSubscriptionRequest(BaseModel):
    bypass_date_check: bool = False
