import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import InvalidStateError, NotFoundError
from app.models.notification import Notification
from app.services.migrations.job_service import JobOutcome, MigrationJobService
from app.utils.enums import ErrorCategory, JobStatus, JobType, NotificationType


pytestmark = pytest.mark.anyio


async def test_create_job_sizes_to_eligible_population(db_session, seed):
    plan = await seed.plan()
    for _ in range(4):
        await seed.due_subscription(plan)
    await seed.subscription(plan)  # not grandfathered

    service = MigrationJobService(db_session)
    job = await service.create_job(plan.id, JobType.migration)
    capped = await service.create_job(plan.id, JobType.migration, batch_size=2)
    explicit = await service.create_job(plan.id, JobType.notice, total_count=7)

    assert job.status == JobStatus.pending
    assert (job.total_count, job.success_count, job.failed_count) == (4, 0, 0)
    assert capped.total_count == 2
    assert explicit.total_count == 7


async def test_create_job_for_missing_plan(db_session):
    with pytest.raises(NotFoundError):
        await MigrationJobService(db_session).create_job(uuid.uuid4(), JobType.notice)


async def test_job_can_only_be_started_once(db_session, seed):
    plan = await seed.plan()
    service = MigrationJobService(db_session)
    job = await service.create_job(plan.id, JobType.migration, total_count=1)

    started = await service.start_job(job.id)
    assert started.status == JobStatus.running
    assert started.started_at is not None

    with pytest.raises(InvalidStateError):
        await service.start_job(job.id)


async def test_complete_job_records_outcome(db_session, seed):
    plan = await seed.plan()
    service = MigrationJobService(db_session)
    ok = await seed.job(plan, status=JobStatus.running, total_count=3)
    bad = await seed.job(plan, status=JobStatus.running, total_count=2)

    assert await service.complete_job(ok.id, JobOutcome(True, processed=3, succeeded=2, failed=1))
    assert await service.complete_job(
        bad.id, JobOutcome(False, processed=2, failed=2, error_message="2 of 2 failed")
    )

    ok = await service.get_job(ok.id)
    bad = await service.get_job(bad.id)
    assert ok.status == JobStatus.completed
    assert (ok.success_count, ok.failed_count) == (2, 1)
    assert ok.error_message is None
    assert ok.completed_at is not None
    assert bad.status == JobStatus.failed
    assert bad.error_message == "2 of 2 failed"


async def test_complete_after_cancel_keeps_cancellation(db_session, seed):
    plan = await seed.plan()
    service = MigrationJobService(db_session)
    job = await seed.job(plan, status=JobStatus.running, total_count=5)
    await service.cancel_job(job.id, reason="operator", notify=False)

    assert await service.complete_job(job.id, JobOutcome(True, processed=2, succeeded=2)) is False

    job = await service.get_job(job.id)
    assert job.status == JobStatus.cancelled
    assert job.success_count == 2


async def test_complete_pending_job_is_rejected(db_session, seed):
    plan = await seed.plan()
    job = await seed.job(plan)
    with pytest.raises(InvalidStateError):
        await MigrationJobService(db_session).complete_job(job.id, JobOutcome(True))


async def test_cancel_job_stores_reason_and_notifies(db_session, seed):
    await seed.admin()
    plan = await seed.plan(name="Starter")
    job = await seed.job(plan, status=JobStatus.running, total_count=10, success_count=4)

    cancelled = await MigrationJobService(db_session).cancel_job(job.id, reason="wrong price")

    assert cancelled.status == JobStatus.cancelled
    assert cancelled.error_message == "Cancelled: wrong price"
    assert cancelled.completed_at is not None
    notes = (
        await db_session.execute(
            select(Notification).where(Notification.type == NotificationType.migration_job_cancelled)
        )
    ).scalars().all()
    assert len(notes) == 1
    assert "4 subscriptions were migrated" in notes[0].message
    assert notes[0].meta["reason"] == "wrong price"


@pytest.mark.parametrize(
    "status, message",
    [
        (JobStatus.completed, "Cannot cancel a completed job"),
        (JobStatus.failed, "Job is already failed"),
        (JobStatus.cancelled, "Job is already cancelled"),
    ],
)
async def test_cancel_job_rejects_terminal_states(db_session, seed, status, message):
    plan = await seed.plan()
    job = await seed.job(plan, status=status)
    with pytest.raises(InvalidStateError, match=message):
        await MigrationJobService(db_session).cancel_job(job.id)


async def test_is_cancelled_reads_fresh_status(db_session, seed, session_factory):
    plan = await seed.plan()
    job = await seed.job(plan, status=JobStatus.running)
    service = MigrationJobService(db_session)
    assert await service.is_cancelled(job.id) is False

    async with session_factory() as other:
        await MigrationJobService(other).cancel_job(job.id, notify=False)

    assert await service.is_cancelled(job.id) is True


async def test_list_jobs_filters_and_paginates(db_session, seed):
    starter = await seed.plan(name="Starter")
    pro = await seed.plan(name="Professional")
    for hours in range(3):
        await seed.job(starter, status=JobStatus.completed, created_ago=timedelta(hours=hours))
    await seed.job(pro, JobType.notice, status=JobStatus.failed)

    service = MigrationJobService(db_session)
    page = await service.list_jobs(plan_id=starter.id, limit=2)
    assert page["total"] == 3
    assert len(page["jobs"]) == 2
    assert page["has_more"] is True
    assert page["jobs"][0]["plan_name"] == "Starter"

    last = await service.list_jobs(plan_id=starter.id, limit=2, offset=2)
    assert last["has_more"] is False

    failed = await service.list_jobs(status=JobStatus.failed)
    assert [j["job_type"] for j in failed["jobs"]] == [JobType.notice]
    notices = await service.list_jobs(job_type=JobType.notice)
    assert notices["total"] == 1


async def test_active_jobs_report_recent_failures(db_session, seed):
    plan = await seed.plan()
    running = await seed.job(plan, status=JobStatus.running, total_count=3)
    await seed.job(plan, status=JobStatus.completed)
    sub_a = await seed.due_subscription(plan)
    sub_b = await seed.due_subscription(plan)
    await seed.attempt(running, sub_a, success=False, error_category=ErrorCategory.payment)
    await seed.attempt(
        running, sub_b, success=False, error_category=ErrorCategory.payment,
        created_ago=timedelta(hours=2),
    )

    active = await MigrationJobService(db_session).get_active_jobs()

    assert [j["id"] for j in active] == [running.id]
    assert active[0]["recent_failures"] == 1


async def test_job_statistics_counts_by_status(db_session, seed):
    plan = await seed.plan()
    await seed.job(plan, status=JobStatus.completed)
    await seed.job(plan, status=JobStatus.completed)
    await seed.job(plan, status=JobStatus.failed)
    await seed.job(plan, status=JobStatus.pending)

    stats = await MigrationJobService(db_session).get_job_statistics()

    assert stats["total_jobs"] == 4
    assert stats["completed_jobs"] == 2
    assert stats["failed_jobs"] == 1
    assert stats["running_jobs"] == 0
    assert stats["success_rate"] == 50.0
    assert len(stats["recent_jobs"]) == 4
