import uuid
from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, func
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import SubscriptionStatus


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False, index=True)

    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.active
    )

    # Pricing: what the customer pays now vs. what they paid before re-pricing
    price_pence = Column(Integer, nullable=False)
    original_price_pence = Column(Integer, nullable=True)
    is_grandfathered = Column(Boolean, nullable=False, default=False, index=True)

    # Notice period tracking
    notice_sent_at = Column(DateTime(timezone=True), nullable=True)
    migration_scheduled_at = Column(DateTime(timezone=True), nullable=True)

    # Recurring subscription tracking (Stripe IDs)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        default=get_current_utc_datetime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # relationships
    plan = relationship("Plan", back_populates="subscriptions")
    user = relationship("User", back_populates="subscriptions")
    attempts = relationship("JobAttempt", back_populates="subscription")
