from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, Text, func
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import JobStatus, JobType


class MigrationJob(Base):
    __tablename__ = "migration_jobs"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id = Column(PG_UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True)
    job_type = Column(Enum(JobType), nullable=False)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.pending, index=True)

    total_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Execution parameters, kept on the row so a dispatcher can run the job later
    batch_size = Column(Integer, nullable=True)
    bypass_date_check = Column(Boolean, nullable=False, default=False)
    notice_period_days = Column(Float, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=get_current_utc_datetime,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    plan = relationship("Plan", back_populates="migration_jobs")
    attempts = relationship(
        "JobAttempt",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def processed_count(self) -> int:
        return (self.success_count or 0) + (self.failed_count or 0)

    @property
    def progress_percentage(self) -> int:
        if not self.total_count:
            return 0
        return round(self.processed_count / self.total_count * 100)
