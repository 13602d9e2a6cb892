"""Which subscriptions a NOTICE or MIGRATION job may act on."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import Subscription
from app.utils.enums import JobType, SubscriptionStatus


def notice_filters(plan_id: uuid.UUID) -> list:
    return [
        Subscription.plan_id == plan_id,
        Subscription.is_grandfathered.is_(True),
        Subscription.notice_sent_at.is_(None),
        Subscription.status == SubscriptionStatus.active,
    ]


def migration_filters(
    plan_id: Optional[uuid.UUID], now: datetime, bypass_date_check: bool = False
) -> list:
    """Grandfathered, noticed and active; due unless ``bypass_date_check``.

    ``plan_id=None`` matches every plan (used to find plans with due work).
    """
    filters = [
        Subscription.is_grandfathered.is_(True),
        Subscription.notice_sent_at.is_not(None),
        Subscription.status == SubscriptionStatus.active,
    ]
    if plan_id is not None:
        filters.append(Subscription.plan_id == plan_id)
    if not bypass_date_check:
        filters.append(Subscription.migration_scheduled_at.is_not(None))
        filters.append(Subscription.migration_scheduled_at <= now)
    return filters


def eligible_filters(
    job_type: JobType, plan_id: uuid.UUID, now: datetime, bypass_date_check: bool = False
) -> list:
    if job_type == JobType.notice:
        return notice_filters(plan_id)
    return migration_filters(plan_id, now, bypass_date_check)


async def count_eligible(
    db: AsyncSession,
    job_type: JobType,
    plan_id: uuid.UUID,
    now: datetime,
    bypass_date_check: bool = False,
) -> int:
    stmt = select(func.count(Subscription.id)).where(
        *eligible_filters(job_type, plan_id, now, bypass_date_check)
    )
    return int((await db.execute(stmt)).scalar_one())
