from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core.exceptions import InvalidStateError, ValidationError
from app.models.migration_job import MigrationJob
from app.models.notification import Notification
from app.services.migrations.retry_service import MigrationRetryService, can_auto_retry
from app.utils.datetime_utils import ensure_utc
from app.utils.enums import (
    AutoRetrySkipReason,
    ErrorCategory,
    HealthStatus,
    JobStatus,
    JobType,
    NotificationType,
    RetryStrategy,
)


pytestmark = pytest.mark.anyio

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _job(job_type=JobType.migration, age=timedelta(hours=1)) -> MigrationJob:
    return MigrationJob(job_type=job_type, status=JobStatus.failed, created_at=NOW - age)


@pytest.mark.parametrize(
    "job, failed, last_attempt, expected",
    [
        (_job(), 1, NOW - timedelta(hours=1), None),
        (_job(), 0, None, None),
        (_job(age=timedelta(hours=24)), 0, None, AutoRetrySkipReason.too_old),
        (_job(), 3, None, AutoRetrySkipReason.too_many_failures),
        (_job(JobType.notice), 1, None, AutoRetrySkipReason.notice_job),
        (_job(), 1, NOW - timedelta(minutes=10), AutoRetrySkipReason.too_recent),
        # Oldest rule wins even when every other rule would also skip
        (_job(JobType.notice, age=timedelta(days=2)), 5, NOW, AutoRetrySkipReason.too_old),
    ],
)
def test_can_auto_retry(job, failed, last_attempt, expected):
    assert can_auto_retry(job, failed, last_attempt, NOW) == expected


async def _failed_job_with_history(seed, plan, *, successes=2, failures=1, created_ago=None):
    job = await seed.job(
        plan,
        status=JobStatus.failed,
        total_count=successes + failures,
        success_count=successes,
        failed_count=failures,
        created_ago=created_ago or timedelta(hours=1),
    )
    for _ in range(successes):
        await seed.attempt(job, await seed.due_subscription(plan), success=True)
    for _ in range(failures):
        await seed.attempt(
            job,
            await seed.due_subscription(plan),
            success=False,
            error_message="Stripe error: card declined",
            error_category=ErrorCategory.payment,
            created_ago=timedelta(hours=1),
        )
    return job


async def test_manual_retry_keeps_successful_attempts(db_session, seed):
    plan = await seed.plan()
    job = await _failed_job_with_history(seed, plan)
    service = MigrationRetryService(db_session)

    result = await service.manual_retry(job.id)

    assert result["status"] == JobStatus.pending
    assert result["cleared_failed_attempts"] == 1
    assert result["scheduled"] is False
    job = await service.jobs.get_job(job.id)
    assert job.status == JobStatus.pending
    assert job.success_count == 2
    assert job.failed_count == 0
    assert job.error_message is None
    assert job.started_at is None and job.completed_at is None


async def test_manual_retry_with_delay_is_scheduled(db_session, seed):
    plan = await seed.plan()
    job = await _failed_job_with_history(seed, plan)
    service = MigrationRetryService(db_session)

    result = await service.manual_retry(job.id, delay_minutes=15)

    assert result["scheduled"] is True
    job = await service.jobs.get_job(job.id)
    assert abs(ensure_utc(job.scheduled_for) - result["retry_time"]) < timedelta(seconds=1)


async def test_manual_retry_policy(db_session, seed):
    plan = await seed.plan()
    service = MigrationRetryService(db_session)
    completed = await seed.job(plan, status=JobStatus.completed)
    old = await _failed_job_with_history(seed, plan, created_ago=timedelta(days=2))
    ancient = await _failed_job_with_history(seed, plan, created_ago=timedelta(days=8))
    noisy = await _failed_job_with_history(seed, plan, successes=0, failures=5)

    with pytest.raises(InvalidStateError, match="Only failed jobs"):
        await service.manual_retry(completed.id)
    with pytest.raises(InvalidStateError, match="use force"):
        await service.manual_retry(old.id)
    with pytest.raises(InvalidStateError, match="too old"):
        await service.manual_retry(ancient.id, force=True)
    with pytest.raises(InvalidStateError, match="Too many failed attempts"):
        await service.manual_retry(noisy.id)

    forced = await service.manual_retry(old.id, force=True)
    assert forced["status"] == JobStatus.pending


async def test_bulk_retry_reports_each_job(db_session, seed):
    plan = await seed.plan()
    failed = await _failed_job_with_history(seed, plan)
    completed = await seed.job(plan, status=JobStatus.completed)

    result = await MigrationRetryService(db_session).bulk_retry_jobs([failed.id, completed.id])

    assert (result["total"], result["succeeded"], result["failed"]) == (2, 1, 1)
    by_id = {r["job_id"]: r for r in result["results"]}
    assert by_id[failed.id]["success"] is True
    assert "Only failed jobs" in by_id[completed.id]["error"]


async def test_auto_retry_sweep_reruns_eligible_jobs(db_session, seed, gateway):
    await seed.admin()
    plan = await seed.plan(price_pence=4900)
    job = await _failed_job_with_history(seed, plan, successes=0, failures=1)
    notice = await seed.job(plan, JobType.notice, status=JobStatus.failed, created_ago=timedelta(hours=1))
    stale = await seed.job(plan, status=JobStatus.failed, created_ago=timedelta(hours=30))

    result = await MigrationRetryService(db_session, gateway).auto_retry_sweep()

    assert result["processed"] == 2
    assert [r["job_id"] for r in result["retried"]] == [job.id]
    assert [s["reason"] for s in result["skipped"]] == [AutoRetrySkipReason.notice_job]
    assert result["errors"] == []
    assert stale.id not in {s["job_id"] for s in result["skipped"]}

    await db_session.refresh(job)
    assert job.status == JobStatus.completed
    assert job.success_count == 1
    assert len(gateway.updates) == 1
    await db_session.refresh(notice)
    assert notice.status == JobStatus.failed


async def test_auto_retry_respects_backoff(db_session, seed, gateway):
    plan = await seed.plan()
    job = await seed.job(plan, status=JobStatus.failed, created_ago=timedelta(hours=1))
    await seed.attempt(job, await seed.due_subscription(plan), success=False)

    result = await MigrationRetryService(db_session, gateway).auto_retry_sweep()

    assert result["skipped"][0]["reason"] == AutoRetrySkipReason.too_recent
    assert gateway.updates == []


async def test_emergency_stop_cancels_active_jobs(db_session, seed):
    await seed.admin()
    plan = await seed.plan()
    first = await seed.job(plan, status=JobStatus.running, total_count=10, success_count=4)
    second = await seed.job(plan, status=JobStatus.running, total_count=10, success_count=6)
    done = await seed.job(plan, status=JobStatus.completed)

    result = await MigrationRetryService(db_session).emergency_stop(
        "Pricing error", stopped_by="ops@example.com"
    )

    assert {j["job_id"] for j in result["stopped_jobs"]} == {first.id, second.id}
    assert result["errors"] == []
    assert result["stopped_by"] == "ops@example.com"
    for job, migrated in ((first, 4), (second, 6)):
        await db_session.refresh(job)
        assert job.status == JobStatus.cancelled
        assert job.success_count == migrated
        assert job.error_message == "Cancelled: Emergency stop: Pricing error"
    await db_session.refresh(done)
    assert done.status == JobStatus.completed

    notes = (await db_session.execute(select(Notification))).scalars().all()
    assert [n.type for n in notes] == [NotificationType.emergency_stop]
    assert notes[0].meta["stopped_by"] == "ops@example.com"


async def test_schedule_retry_validation(db_session, seed):
    plan = await seed.plan()
    running = await seed.job(plan, status=JobStatus.running)
    failed = await seed.job(plan, status=JobStatus.failed, batch_size=25)
    service = MigrationRetryService(db_session)

    with pytest.raises(InvalidStateError):
        await service.schedule_retry(running.id)
    with pytest.raises(ValidationError, match="required"):
        await service.schedule_retry(failed.id, RetryStrategy.scheduled)
    with pytest.raises(ValidationError, match="future"):
        await service.schedule_retry(
            failed.id,
            RetryStrategy.scheduled,
            scheduled_time=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

    result = await service.schedule_retry(failed.id, RetryStrategy.delayed, delay_hours=2)
    new_job = await service.jobs.get_job(result["new_job_id"])
    assert new_job.status == JobStatus.pending
    assert new_job.batch_size == 25
    assert new_job.plan_id == plan.id
    delay = ensure_utc(new_job.scheduled_for) - datetime.now(timezone.utc)
    assert timedelta(hours=1, minutes=59) < delay <= timedelta(hours=2)


async def test_bulk_retry_analysis_estimates(db_session, seed):
    plan = await seed.plan()
    first = await _failed_job_with_history(seed, plan, successes=1, failures=2)
    second = await _failed_job_with_history(seed, plan, successes=0, failures=1)

    analysis = await MigrationRetryService(db_session).bulk_retry_analysis(
        job_ids=[first.id, second.id], batch_size=2, retry_delay_minutes=5
    )

    assert analysis["total_retryable_attempts"] == 3
    assert analysis["estimated_batches"] == 2
    assert analysis["estimated_completion_minutes"] == 15


async def test_retry_statistics_health(db_session, seed):
    plan = await seed.plan()
    await seed.job(plan, status=JobStatus.completed)
    for _ in range(3):
        await seed.job(plan, status=JobStatus.failed)

    stats = await MigrationRetryService(db_session).get_retry_statistics()

    assert stats["last_24h"]["total_jobs"] == 4
    assert stats["last_24h"]["success_rate"] == 0.25
    assert stats["health"] == HealthStatus.critical
