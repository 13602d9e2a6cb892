from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import OutboxStatus


class EmailOutbox(Base):
    __tablename__ = "email_outbox"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template = Column(String(255), nullable=False)
    recipient = Column(String(320), nullable=False)
    subject = Column(String(255), nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    status = Column(Enum(OutboxStatus), nullable=False, default=OutboxStatus.pending, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=get_current_utc_datetime,
        server_default=func.now(),
        nullable=False,
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)

    def mark_sent(self) -> None:
        self.status = OutboxStatus.sent
        self.sent_at = datetime.now(timezone.utc)
        self.last_error = None

    def mark_failed(self, error: str, max_attempts: int) -> None:
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error
        if self.attempts >= max_attempts:
            self.status = OutboxStatus.failed
