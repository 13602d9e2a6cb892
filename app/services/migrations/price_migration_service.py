"""Plan re-pricing, grandfathering, price-change notices and subscription migration.

Lifecycle of one subscription across a price change::

    active (plan price)
      -> grandfathered        create_new_price_version: old price kept, original_price_pence captured
      -> noticed              send_migration_notices: notice_sent_at / migration_scheduled_at stamped
      -> migrated             migrate_customer: gateway switched, price_pence = plan price

Batch operations run as MigrationJobs with one JobAttempt per subscription.
A failing subscription is recorded and counted; it never aborts the batch.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ConfigurationError,
    InvalidStateError,
    MigrationError,
    NotFoundError,
    ValidationError,
)
from app.core.logging_config import get_logger
from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import User
from app.services.mail_handler_service.message_queue import (
    MIGRATION_CONFIRMATION_TEMPLATE,
    PRICE_NOTICE_TEMPLATE,
    enqueue_message,
)
from app.services.migrations.attempt_service import JobAttemptService
from app.services.migrations.eligibility import migration_filters, notice_filters
from app.services.migrations.error_handler import categorize_exception
from app.services.migrations.job_service import JobOutcome, MigrationJobService
from app.services.notifications import admin_notifications
from app.services.payments.stripe_client import PaymentGateway, call_gateway, get_gateway
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime
from app.utils.enums import ErrorCategory, JobStatus, JobType, NotificationType, SubscriptionStatus
from app.utils.money import format_price

logger = get_logger(__name__)

DEFAULT_NOTICE_PERIOD_DAYS = 30.0
BILLING_PATH = "/billing"


@dataclass
class BatchResult:
    """Aggregate outcome of a notice or migration batch."""

    job_id: uuid.UUID
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    migrated_ids: List[uuid.UUID] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    def record_success(self, subscription_id: uuid.UUID) -> None:
        self.attempted += 1
        self.succeeded += 1
        self.migrated_ids.append(subscription_id)

    def record_failure(
        self, subscription_id: uuid.UUID, reason: str, category: ErrorCategory
    ) -> None:
        self.attempted += 1
        self.failed += 1
        self.errors.append(
            {"subscription_id": subscription_id, "reason": reason, "category": category}
        )

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.succeeded == 0

    def summary_error(self) -> Optional[str]:
        if not self.errors:
            return None
        reason, _ = Counter(e["reason"] for e in self.errors).most_common(1)[0]
        return f"{self.failed} of {self.attempted} subscriptions failed. Most common error: {reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "migrated_ids": self.migrated_ids,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


@dataclass
class _Target:
    subscription_id: uuid.UUID
    owner_id: uuid.UUID


@dataclass
class _PreparedMigration:
    """Everything needed to migrate one subscription, read up-front.

    Held as plain values so nothing touches ORM state across awaits or
    after a rollback.
    """

    subscription_id: uuid.UUID
    owner_id: uuid.UUID
    owner_email: Optional[str]
    owner_name: str
    plan_id: uuid.UUID
    plan_name: str
    currency: str
    old_price_pence: int
    new_price_pence: int
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    already_migrated: bool = False


class PriceMigrationService:
    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self._gateway = gateway
        self.jobs = MigrationJobService(db)
        self.attempts = JobAttemptService(db)

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    async def _get_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self.db.get(Plan, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        await self.db.refresh(plan)
        return plan

    # Price versioning

    async def create_new_price_version(
        self, plan_id: uuid.UUID, new_price_pence: int
    ) -> Dict[str, Any]:
        """Re-price a plan and grandfather its current active subscribers.

        The plan update and the grandfathering UPDATE share one commit.
        """
        if new_price_pence is None or new_price_pence <= 0:
            raise ValidationError("New price must be greater than 0")

        plan = await self._get_plan(plan_id)
        plan_name, currency = plan.name, plan.currency
        old_price = plan.price_pence
        product_id = plan.stripe_product_id

        try:
            if not product_id:
                product_id = await call_gateway(self.gateway.create_product, plan_name, True)
                plan.stripe_product_id = product_id
                # Kept even if the rest fails so a second attempt reuses the product
                await self.db.commit()

            price_id = await call_gateway(
                self.gateway.create_price,
                new_price_pence,
                currency,
                product_id,
                "month",
                {"plan_id": str(plan_id)},
            )
        except Exception as e:
            _, message = categorize_exception(e)
            logger.error(f"Stripe sync failed for plan {plan_id}: {message}")
            await admin_notifications.notify_stripe_sync_failed(
                self.db, plan_id=plan_id, plan_name=plan_name, error_message=message
            )
            raise

        try:
            plan.price_pence = new_price_pence
            plan.stripe_price_id = price_id
            plan.is_legacy_price = True
            to_grandfather = list(
                (
                    await self.db.execute(
                        select(Subscription.id).where(
                            Subscription.plan_id == plan_id,
                            Subscription.status == SubscriptionStatus.active,
                            Subscription.is_grandfathered.is_(False),
                        )
                    )
                ).scalars()
            )
            if to_grandfather:
                await self.db.execute(
                    update(Subscription)
                    .where(Subscription.id.in_(to_grandfather))
                    .values(is_grandfathered=True, original_price_pence=old_price)
                    .execution_options(synchronize_session="fetch")
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Price version for plan {plan_id} rolled back: {e}")
            raise MigrationError(
                "Failed to apply the new price version; no changes were saved",
                category=ErrorCategory.database,
                raw_message=str(e),
            )

        grandfathered = len(to_grandfather)
        logger.info(
            f"💷 Plan {plan_name} re-priced {old_price} -> {new_price_pence} {currency}; "
            f"{grandfathered} subscriptions grandfathered"
        )
        return {
            "plan_id": plan_id,
            "old_price_pence": old_price,
            "new_price_pence": new_price_pence,
            "stripe_price_id": price_id,
            "grandfathered_subscriptions": grandfathered,
            "message": (
                f"Price updated from {format_price(old_price, currency)} to "
                f"{format_price(new_price_pence, currency)}. "
                f"{grandfathered} existing subscriptions keep their current price until migrated."
            ),
        }

    # Notices

    @staticmethod
    def _validate_notice_period(notice_period_days: float) -> None:
        if notice_period_days is None or notice_period_days < settings.MIGRATION_MIN_NOTICE_DAYS:
            raise ValidationError(
                f"notice_period_days must be >= {settings.MIGRATION_MIN_NOTICE_DAYS:g}"
            )

    async def queue_notice_job(
        self,
        plan_id: uuid.UUID,
        notice_period_days: float = DEFAULT_NOTICE_PERIOD_DAYS,
        scheduled_for: Optional[datetime] = None,
    ) -> MigrationJob:
        self._validate_notice_period(notice_period_days)
        return await self.jobs.create_job(
            plan_id,
            JobType.notice,
            notice_period_days=notice_period_days,
            scheduled_for=scheduled_for,
        )

    async def send_migration_notices(
        self, plan_id: uuid.UUID, notice_period_days: float = DEFAULT_NOTICE_PERIOD_DAYS
    ) -> Dict[str, Any]:
        self._validate_notice_period(notice_period_days)
        job = await self.jobs.create_job(
            plan_id, JobType.notice, notice_period_days=notice_period_days, claim=True
        )
        result = await self._run_notice_job(job.id, claimed=True)
        return result.to_dict()

    async def _size_job(self, job_id: uuid.UUID, current_total: int, new_targets: int) -> None:
        """Size the job to this run plus successes kept from earlier runs of it."""
        counters = await self.attempts.recompute_job_counters(job_id)
        total = counters["success_count"] + new_targets
        if total == current_total:
            return
        await self.db.execute(
            update(MigrationJob)
            .where(MigrationJob.id == job_id)
            .values(total_count=total)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _begin_job(self, job_id: uuid.UUID, claimed: bool) -> MigrationJob:
        if not claimed:
            return await self.jobs.start_job(job_id)
        job = await self.jobs.get_job(job_id)
        if job.status != JobStatus.running:
            raise InvalidStateError(
                f"Claimed job {job_id} is '{job.status.value}', expected 'running'"
            )
        return job

    async def _run_notice_job(self, job_id: uuid.UUID, claimed: bool = False) -> BatchResult:
        job = await self._begin_job(job_id, claimed)
        plan = await self._get_plan(job.plan_id)
        plan_id, plan_name, currency = plan.id, plan.name, plan.currency
        new_price = plan.price_pence
        notice_days = job.notice_period_days or DEFAULT_NOTICE_PERIOD_DAYS

        rows = await self.db.execute(
            select(
                Subscription.id,
                Subscription.user_id,
                Subscription.price_pence,
                Subscription.original_price_pence,
                User.email,
                User.first_name,
                User.last_name,
                User.business_name,
            )
            .join(User, User.id == Subscription.user_id)
            .where(*notice_filters(plan_id))
            .order_by(Subscription.created_at.asc())
        )
        targets = rows.all()
        await self._size_job(job_id, job.total_count, len(targets))

        result = BatchResult(job_id=job_id)
        for sub_id, owner_id, price, original_price, email, first, last, business in targets:
            if await self.jobs.is_cancelled(job_id):
                result.cancelled = True
                logger.warning(f"Notice job {job_id} cancelled; stopping after {result.attempted}")
                break
            try:
                attempt = await self.attempts.create_attempt(job_id, sub_id, owner_id)
            except InvalidStateError:
                result.cancelled = True
                break
            attempt_id = attempt.id

            now = get_current_utc_datetime()
            effective = now + timedelta(days=notice_days)
            try:
                await enqueue_message(
                    self.db,
                    template=PRICE_NOTICE_TEMPLATE,
                    recipient=email,
                    subject=f"Upcoming price change for your {plan_name} plan",
                    context={
                        "garage_name": business or f"{first} {last}".strip(),
                        "plan_name": plan_name,
                        "old_price": format_price(
                            original_price if original_price is not None else price, currency
                        ),
                        "new_price": format_price(new_price, currency),
                        "effective_date": effective.strftime("%d %B %Y"),
                        "billing_portal_url": f"{settings.APP_URL}{BILLING_PATH}",
                    },
                )
                await self.db.execute(
                    update(Subscription)
                    .where(Subscription.id == sub_id)
                    .values(notice_sent_at=now, migration_scheduled_at=effective)
                    .execution_options(synchronize_session="evaluate")
                )
                # Email row and notice stamp commit together
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                category, message = categorize_exception(e)
                await self.attempts.update_attempt(
                    attempt_id, False, error_message=message, error_category=category
                )
                result.record_failure(sub_id, message, category)
                logger.warning(f"Notice for subscription {sub_id} failed ({category.value}): {message}")
                continue

            await self.attempts.update_attempt(attempt_id, True)
            result.record_success(sub_id)

        await self._finish_job(job_id, result)

        if result.all_failed:
            await admin_notifications.notify_notice_sending_failed(
                self.db,
                job_id=job_id,
                plan_name=plan_name,
                failed_count=result.failed,
                total_count=result.attempted,
            )
        logger.info(
            f"📨 Notice job {job_id} for {plan_name}: {result.succeeded} sent, {result.failed} failed"
        )
        return result

    async def _finish_job(self, job_id: uuid.UUID, result: BatchResult) -> None:
        counters = await self.attempts.recompute_job_counters(job_id)
        await self.jobs.complete_job(
            job_id,
            JobOutcome(
                success=not result.all_failed,
                processed=result.attempted,
                succeeded=counters["success_count"],
                failed=counters["failed_count"],
                error_message=result.summary_error(),
            ),
        )

    # Single-subscription migration

    async def _prepare_migration(
        self, subscription_id: uuid.UUID, bypass_date_check: bool
    ) -> _PreparedMigration:
        """Load and validate; raises a typed error for every precondition."""
        sub = await self.db.get(Subscription, subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        await self.db.refresh(sub)

        if sub.status != SubscriptionStatus.active:
            raise InvalidStateError("Only ACTIVE subscriptions can be migrated")

        plan = await self._get_plan(sub.plan_id)
        owner = await self.db.get(User, sub.user_id)
        prepared = _PreparedMigration(
            subscription_id=sub.id,
            owner_id=sub.user_id,
            owner_email=owner.email if owner else None,
            owner_name=owner.display_name if owner else "there",
            plan_id=plan.id,
            plan_name=plan.name,
            currency=plan.currency,
            old_price_pence=sub.price_pence,
            new_price_pence=plan.price_pence,
            stripe_subscription_id=sub.stripe_subscription_id,
            stripe_price_id=plan.stripe_price_id,
            next_billing_date=sub.next_billing_date,
        )
        if not sub.is_grandfathered:
            prepared.already_migrated = True
            return prepared

        if not bypass_date_check:
            scheduled = ensure_utc(sub.migration_scheduled_at)
            if scheduled is None or scheduled > get_current_utc_datetime():
                raise InvalidStateError("Migration is not yet due (notice period not completed)")

        if not prepared.stripe_price_id:
            raise ConfigurationError("Plan is not synced to Stripe (missing stripe_price_id)")
        if not prepared.stripe_subscription_id:
            raise ConfigurationError("No Stripe subscription linked for this customer")
        return prepared

    async def _switch_gateway_price(self, prepared: _PreparedMigration) -> None:
        await call_gateway(
            self.gateway.update_subscription_price,
            prepared.stripe_subscription_id,
            prepared.stripe_price_id,
        )

    async def _apply_migration(self, prepared: _PreparedMigration) -> None:
        """Write the local state after the gateway switched the price."""
        try:
            sub = await self.db.get(Subscription, prepared.subscription_id)
            if sub.original_price_pence is None:
                sub.original_price_pence = sub.price_pence
            sub.price_pence = prepared.new_price_pence
            sub.is_grandfathered = False
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            # Stripe already charges the new price; the local row must be reconciled
            logger.critical(
                f"Subscription {prepared.subscription_id} switched in Stripe to "
                f"{prepared.stripe_price_id} but the local update failed: {e}"
            )
            raise MigrationError(
                "Price switched in Stripe but the local record could not be updated",
                category=ErrorCategory.database,
                raw_message=str(e),
            )

    async def _send_migration_confirmation(self, prepared: _PreparedMigration) -> None:
        """Best effort: failures here never undo the migration."""
        now = get_current_utc_datetime()
        new_price = format_price(prepared.new_price_pence, prepared.currency)
        next_billing = ensure_utc(prepared.next_billing_date)
        try:
            await enqueue_message(
                self.db,
                template=MIGRATION_CONFIRMATION_TEMPLATE,
                recipient=prepared.owner_email,
                subject=f"Your {prepared.plan_name} price has been updated",
                context={
                    "garage_name": prepared.owner_name,
                    "plan_name": prepared.plan_name,
                    "new_price": new_price,
                    "effective_date": now.strftime("%d %B %Y"),
                    "next_billing_date": (
                        next_billing.strftime("%d %B %Y") if next_billing else "your usual cycle"
                    ),
                    "billing_portal_url": f"{settings.APP_URL}{BILLING_PATH}",
                },
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                f"Could not queue migration confirmation for {prepared.subscription_id}: {e}"
            )

        await admin_notifications.send_to_user(
            self.db,
            prepared.owner_id,
            type=NotificationType.price_migrated,
            title="Your subscription price has been updated",
            message=f"Your {prepared.plan_name} subscription now costs {new_price} per month.",
            metadata={
                "subscription_id": str(prepared.subscription_id),
                "plan_id": str(prepared.plan_id),
                "new_price_pence": prepared.new_price_pence,
            },
            entity_id=str(prepared.subscription_id),
        )

    async def migrate_customer(
        self, subscription_id: uuid.UUID, bypass_date_check: bool = False
    ) -> Dict[str, Any]:
        """Move one grandfathered subscription onto its plan's current price.

        Calling this on an already-migrated subscription is a no-op success and
        never touches the gateway.
        """
        prepared = await self._prepare_migration(subscription_id, bypass_date_check)
        if prepared.already_migrated:
            return {
                "success": True,
                "subscription_id": subscription_id,
                "message": "Already migrated",
            }

        await self._switch_gateway_price(prepared)
        await self._apply_migration(prepared)
        await self._send_migration_confirmation(prepared)

        logger.info(
            f"✅ Migrated subscription {subscription_id} on {prepared.plan_name}: "
            f"{prepared.old_price_pence} -> {prepared.new_price_pence}"
        )
        return {
            "success": True,
            "subscription_id": subscription_id,
            "message": "Subscription migrated to the new price",
            "old_price_pence": prepared.old_price_pence,
            "new_price_pence": prepared.new_price_pence,
        }

    # Status

    async def get_migration_status(self, plan_id: uuid.UUID) -> Dict[str, Any]:
        plan = await self._get_plan(plan_id)
        now = get_current_utc_datetime()

        async def _count(*filters) -> int:
            stmt = select(func.count(Subscription.id)).where(
                Subscription.plan_id == plan_id, *filters
            )
            return int((await self.db.execute(stmt)).scalar_one())

        return {
            "plan_id": plan.id,
            "plan_name": plan.name,
            "plan_price_pence": plan.price_pence,
            "is_legacy_price": plan.is_legacy_price,
            "totals": {
                "total": await _count(),
                "grandfathered": await _count(Subscription.is_grandfathered.is_(True)),
                "notice_sent": await _count(
                    Subscription.is_grandfathered.is_(True),
                    Subscription.notice_sent_at.is_not(None),
                ),
                "ready_to_migrate": await _count(*migration_filters(plan_id, now)),
                "migrated": await _count(Subscription.is_grandfathered.is_(False)),
            },
        }

    # Bulk migration

    async def queue_bulk_migration(
        self,
        plan_id: uuid.UUID,
        batch_size: Optional[int] = None,
        bypass_date_check: bool = False,
        scheduled_for: Optional[datetime] = None,
    ) -> MigrationJob:
        return await self.jobs.create_job(
            plan_id,
            JobType.migration,
            batch_size=batch_size or settings.MIGRATION_DEFAULT_BATCH_SIZE,
            bypass_date_check=bypass_date_check,
            scheduled_for=scheduled_for,
        )

    async def bulk_migrate_ready(
        self,
        plan_id: uuid.UUID,
        batch_size: Optional[int] = None,
        bypass_date_check: bool = False,
    ) -> Dict[str, Any]:
        job = await self.jobs.create_job(
            plan_id,
            JobType.migration,
            batch_size=batch_size or settings.MIGRATION_DEFAULT_BATCH_SIZE,
            bypass_date_check=bypass_date_check,
            claim=True,
        )
        result = await self._run_migration_job(job.id, claimed=True)
        return result.to_dict()

    async def _record_failure(
        self,
        attempt_id: uuid.UUID,
        subscription_id: uuid.UUID,
        exc: BaseException,
        result: BatchResult,
    ) -> None:
        await self.db.rollback()
        category, message = categorize_exception(exc)
        await self.attempts.update_attempt(
            attempt_id, False, error_message=message, error_category=category
        )
        result.record_failure(subscription_id, message, category)
        logger.warning(f"Migration of {subscription_id} failed ({category.value}): {message}")

    async def _migrate_target(
        self,
        job_id: uuid.UUID,
        target: _Target,
        bypass_date_check: bool,
        lock: asyncio.Lock,
        slots: asyncio.Semaphore,
        result: BatchResult,
    ) -> None:
        """One worker slot per subscription; session work is serialized by ``lock``."""
        async with slots:
            async with lock:
                if result.cancelled or await self.jobs.is_cancelled(job_id):
                    result.cancelled = True
                    return
                try:
                    attempt = await self.attempts.create_attempt(
                        job_id, target.subscription_id, target.owner_id
                    )
                except InvalidStateError:
                    result.cancelled = True
                    return
                attempt_id = attempt.id
                try:
                    prepared = await self._prepare_migration(
                        target.subscription_id, bypass_date_check
                    )
                except Exception as e:
                    await self._record_failure(attempt_id, target.subscription_id, e, result)
                    return

            if not prepared.already_migrated:
                try:
                    await self._switch_gateway_price(prepared)
                except Exception as e:
                    async with lock:
                        await self._record_failure(attempt_id, target.subscription_id, e, result)
                    return

            async with lock:
                if not prepared.already_migrated:
                    try:
                        await self._apply_migration(prepared)
                    except Exception as e:
                        await self._record_failure(attempt_id, target.subscription_id, e, result)
                        return
                    await self._send_migration_confirmation(prepared)
                await self.attempts.update_attempt(attempt_id, True)
                result.record_success(target.subscription_id)

    async def _run_migration_job(self, job_id: uuid.UUID, claimed: bool = False) -> BatchResult:
        job = await self._begin_job(job_id, claimed)
        plan = await self._get_plan(job.plan_id)
        plan_id, plan_name = plan.id, plan.name
        batch_size = job.batch_size or settings.MIGRATION_DEFAULT_BATCH_SIZE
        bypass = bool(job.bypass_date_check)

        rows = await self.db.execute(
            select(Subscription.id, Subscription.user_id)
            .where(*migration_filters(plan_id, get_current_utc_datetime(), bypass))
            .order_by(Subscription.created_at.asc())
            .limit(batch_size)
        )
        targets = [_Target(sub_id, owner_id) for sub_id, owner_id in rows.all()]
        await self._size_job(job_id, job.total_count, len(targets))

        result = BatchResult(job_id=job_id)
        lock = asyncio.Lock()
        slots = asyncio.Semaphore(max(1, settings.MIGRATION_WORKER_CONCURRENCY))
        outcomes = await asyncio.gather(
            *(
                self._migrate_target(job_id, target, bypass, lock, slots, result)
                for target in targets
            ),
            return_exceptions=True,
        )
        for target, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                # Bookkeeping itself failed; the attempt stays unfinalized for audit
                logger.error(
                    f"Unhandled error migrating {target.subscription_id} in job {job_id}: {outcome}"
                )
                await self.db.rollback()
                category, message = categorize_exception(outcome)
                result.record_failure(target.subscription_id, message, category)

        await self._finish_job(job_id, result)

        if result.failed:
            await admin_notifications.notify_migration_job_failed(
                self.db,
                job_id=job_id,
                plan_name=plan_name,
                error_message=result.summary_error() or "",
                failed_count=result.failed,
                total_count=result.attempted,
            )
        elif result.succeeded:
            await admin_notifications.notify_migration_success(
                self.db, job_id=job_id, plan_name=plan_name, migrated_count=result.succeeded
            )
        logger.info(
            f"🔁 Migration job {job_id} for {plan_name}: {result.succeeded} migrated, "
            f"{result.failed} failed" + (" (cancelled)" if result.cancelled else "")
        )
        return result

    # Deferred execution

    async def run_job(self, job_id: uuid.UUID, claimed: bool = False) -> Dict[str, Any]:
        """Execute a PENDING job created by an admin action or a scheduled retry.

        ``claimed`` jobs were already moved to RUNNING by the caller (the
        auto-retry sweep) and are run without another start transition.
        """
        job = await self.jobs.get_job(job_id)
        expected = JobStatus.running if claimed else JobStatus.pending
        if job.status != expected:
            raise InvalidStateError(
                f"Only {expected.value} jobs can be run here (job {job_id} is '{job.status.value}')"
            )
        if job.job_type == JobType.notice:
            if job.notice_period_days is not None:
                self._validate_notice_period(job.notice_period_days)
            result = await self._run_notice_job(job_id, claimed)
        else:
            result = await self._run_migration_job(job_id, claimed)
        return result.to_dict()
