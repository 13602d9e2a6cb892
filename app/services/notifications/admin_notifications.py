"""Operator notification fan-out.

Every public coroutine here is best-effort: failures are logged and the
session is rolled back, but nothing is raised to the caller. Callers must
commit their own work before notifying.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import get_logger
from app.models.notification import Notification
from app.models.user import Role, User
from app.utils.enums import NotificationType
from app.utils.money import format_price

logger = get_logger(__name__)


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except Exception as e:
        logger.error(f"Rollback after notification failure also failed: {e}")


async def send_to_all_admins(
    db: AsyncSession,
    *,
    type: NotificationType,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    entity_id: Optional[str] = None,
) -> int:
    """Create one notification per active admin. Returns the number created."""
    try:
        result = await db.execute(
            select(User.id).where(User.role == Role.admin, User.is_active.is_(True))
        )
        admin_ids = list(result.scalars().all())
        if not admin_ids:
            logger.warning(f"No active admins to notify for {type.value}: {title}")
            return 0

        for admin_id in admin_ids:
            db.add(
                Notification(
                    receiver_id=admin_id,
                    type=type,
                    title=title,
                    message=message,
                    meta=metadata or {},
                    entity_id=entity_id,
                )
            )
        await db.commit()
        logger.info(f"Notified {len(admin_ids)} admin(s): {title}")
        return len(admin_ids)
    except Exception as e:
        logger.error(f"Failed to notify admins ({type.value}): {e}")
        await _safe_rollback(db)
        return 0


async def _send_to_one(
    db: AsyncSession,
    receiver_id: uuid.UUID,
    *,
    type: NotificationType,
    title: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
    entity_id: Optional[str] = None,
) -> bool:
    try:
        db.add(
            Notification(
                receiver_id=receiver_id,
                type=type,
                title=title,
                message=message,
                meta=metadata or {},
                entity_id=entity_id,
            )
        )
        await db.commit()
        return True
    except Exception as e:
        logger.error(f"Failed to notify {receiver_id} ({type.value}): {e}")
        await _safe_rollback(db)
        return False


async def send_to_user(db: AsyncSession, user_id: uuid.UUID, **payload: Any) -> bool:
    return await _send_to_one(db, user_id, **payload)


# Migration-specific helpers


async def notify_migration_job_failed(
    db: AsyncSession,
    *,
    job_id: uuid.UUID,
    plan_name: str,
    error_message: str,
    failed_count: int,
    total_count: int,
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.migration_job_failed,
        title="Price Migration Job Failed",
        message=(
            f"Migration job for plan '{plan_name}' finished with {failed_count} of "
            f"{total_count} subscriptions failing. {error_message}"
        ),
        metadata={
            "job_id": str(job_id),
            "plan_name": plan_name,
            "failed_count": failed_count,
            "total_count": total_count,
            "error_message": error_message,
        },
        entity_id=str(job_id),
    )


async def notify_notice_sending_failed(
    db: AsyncSession,
    *,
    job_id: uuid.UUID,
    plan_name: str,
    failed_count: int,
    total_count: int,
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.notice_sending_failed,
        title="Price Change Notices Failed",
        message=(
            f"Failed to send price change notices for plan '{plan_name}'. "
            f"{failed_count} of {total_count} notices could not be sent."
        ),
        metadata={
            "job_id": str(job_id),
            "plan_name": plan_name,
            "failed_count": failed_count,
            "total_count": total_count,
        },
        entity_id=str(job_id),
    )


async def notify_stripe_sync_failed(
    db: AsyncSession, *, plan_id: uuid.UUID, plan_name: str, error_message: str
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.stripe_sync_failed,
        title="Stripe Price Sync Failed",
        message=f"Could not sync the new price for plan '{plan_name}' to Stripe: {error_message}",
        metadata={"plan_id": str(plan_id), "plan_name": plan_name, "error_message": error_message},
        entity_id=str(plan_id),
    )


async def notify_cron_job_failed(db: AsyncSession, *, job_name: str, error_message: str) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.cron_job_failed,
        title="Scheduled Task Failed",
        message=f"Scheduled task '{job_name}' failed: {error_message}",
        metadata={"job_name": job_name, "error_message": error_message},
    )


async def notify_mass_suspensions(db: AsyncSession, *, count: int, window_hours: int = 24) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.mass_suspensions,
        title="Unusual Number of Suspensions",
        message=f"{count} subscriptions were suspended in the last {window_hours} hours.",
        metadata={"count": count, "window_hours": window_hours},
    )


async def notify_migration_success(
    db: AsyncSession,
    *,
    job_id: uuid.UUID,
    plan_name: str,
    migrated_count: int,
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.migration_success,
        title="Price Migration Completed",
        message=f"{migrated_count} subscriptions on plan '{plan_name}' were moved to the new price.",
        metadata={"job_id": str(job_id), "plan_name": plan_name, "migrated_count": migrated_count},
        entity_id=str(job_id),
    )


async def notify_revenue_drop(
    db: AsyncSession, *, current_pence: int, previous_pence: int, drop_percentage: float
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.revenue_drop,
        title="Revenue Drop Detected",
        message=(
            f"Monthly recurring revenue dropped {drop_percentage:.1f}% "
            f"(from {format_price(previous_pence)} to {format_price(current_pence)})."
        ),
        metadata={
            "current_pence": current_pence,
            "previous_pence": previous_pence,
            "drop_percentage": round(drop_percentage, 1),
        },
    )


async def notify_job_cancelled(
    db: AsyncSession,
    *,
    job_id: uuid.UUID,
    plan_id: uuid.UUID,
    plan_name: str,
    migrated_before_cancel: int,
    reason: Optional[str] = None,
) -> int:
    message = (
        f"Migration job for plan '{plan_name}' was cancelled. "
        f"{migrated_before_cancel} subscriptions were migrated before cancellation."
    )
    if reason:
        message += f" Reason: {reason}"
    return await send_to_all_admins(
        db,
        type=NotificationType.migration_job_cancelled,
        title="Migration Job Cancelled",
        message=message,
        metadata={
            "job_id": str(job_id),
            "plan_id": str(plan_id),
            "plan_name": plan_name,
            "migrated_before_cancel": migrated_before_cancel,
            "reason": reason,
        },
        entity_id=str(job_id),
    )


async def notify_emergency_stop(
    db: AsyncSession,
    *,
    stopped_job_ids: Iterable[uuid.UUID],
    reason: str,
    stopped_by: Optional[str] = None,
) -> int:
    ids = [str(job_id) for job_id in stopped_job_ids]
    return await send_to_all_admins(
        db,
        type=NotificationType.emergency_stop,
        title="Emergency Stop Executed",
        message=f"{len(ids)} migration job(s) were stopped. Reason: {reason}",
        metadata={"stopped_job_ids": ids, "reason": reason, "stopped_by": stopped_by},
    )


async def notify_stuck_jobs(db: AsyncSession, *, jobs: list[Dict[str, Any]]) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.stuck_jobs,
        title="Migration Jobs Appear Stuck",
        message=f"{len(jobs)} migration job(s) have been running for more than 2 hours.",
        metadata={"jobs": jobs},
    )


async def notify_high_failure_rate(
    db: AsyncSession,
    *,
    job_id: uuid.UUID,
    plan_name: str,
    failure_rate: float,
    failed_count: int,
    processed_count: int,
) -> int:
    return await send_to_all_admins(
        db,
        type=NotificationType.high_failure_rate,
        title="High Migration Failure Rate",
        message=(
            f"Job for plan '{plan_name}' is failing {failure_rate:.0f}% of subscriptions "
            f"({failed_count} of {processed_count} processed)."
        ),
        metadata={
            "job_id": str(job_id),
            "plan_name": plan_name,
            "failure_rate": round(failure_rate, 1),
            "failed_count": failed_count,
            "processed_count": processed_count,
        },
        entity_id=str(job_id),
    )
