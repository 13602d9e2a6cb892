from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, Text, func
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import ErrorCategory


class JobAttempt(Base):
    __tablename__ = "job_attempts"
    __table_args__ = (
        Index("ix_job_attempts_job_subscription", "job_id", "subscription_id"),
        Index("ix_job_attempts_job_success", "job_id", "success"),
    )

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("migration_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscription_id = Column(PG_UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False)
    # Denormalized subscription owner for reporting
    owner_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    error_category = Column(Enum(ErrorCategory), nullable=True)
    retry_after = Column(DateTime(timezone=True), nullable=True)
    # Null until the operation resolved; an unset value after the job ended marks a crash
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=get_current_utc_datetime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    job = relationship("MigrationJob", back_populates="attempts")
    subscription = relationship("Subscription", back_populates="attempts")
    owner = relationship("User")
