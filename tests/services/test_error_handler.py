from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import GatewayError, ValidationError
from app.services.migrations.error_handler import (
    ErrorHandlerService,
    categorize_exception,
    classify_error_message,
    recommend_strategy,
    recovery_actions,
)
from app.utils.enums import ErrorCategory, HealthStatus, JobStatus, JobType, RetryStrategy


pytestmark = pytest.mark.anyio


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Connection reset by peer", ErrorCategory.network),
        ("Request timed out", ErrorCategory.network),
        ("duplicate key violates unique constraint", ErrorCategory.database),
        ("Stripe error: card declined", ErrorCategory.payment),
        ("Invalid price id", ErrorCategory.validation),
        ("Forbidden: api key revoked", ErrorCategory.permission),
        ("something odd happened", ErrorCategory.other),
        # network keywords are checked before payment ones
        ("Stripe timeout", ErrorCategory.network),
        (None, ErrorCategory.other),
    ],
)
def test_classify_error_message(message, expected):
    assert classify_error_message(message) == expected


def test_categorize_exception_prefers_typed_category():
    assert categorize_exception(
        GatewayError("Gateway call timed out", category=ErrorCategory.network)
    ) == (ErrorCategory.network, "Gateway call timed out")
    assert categorize_exception(ValidationError("bad input"))[0] == ErrorCategory.validation
    assert categorize_exception(OperationalError("SELECT 1", {}, Exception("locked")))[0] == (
        ErrorCategory.database
    )
    assert categorize_exception(TimeoutError())[0] == ErrorCategory.network
    assert categorize_exception(RuntimeError("card expired")) == (
        ErrorCategory.payment,
        "card expired",
    )


@pytest.mark.parametrize(
    "rate, dominant, strategy, confidence",
    [
        (95, ErrorCategory.payment, RetryStrategy.immediate, 90),
        (40, ErrorCategory.payment, RetryStrategy.delayed, 40),
        (40, ErrorCategory.network, RetryStrategy.scheduled, 60),
        (70, ErrorCategory.payment, RetryStrategy.scheduled, 60),
        (0, None, RetryStrategy.scheduled, 60),
    ],
)
def test_recommend_strategy(rate, dominant, strategy, confidence):
    recommendation = recommend_strategy(rate, dominant)
    assert recommendation["strategy"] == strategy
    assert recommendation["confidence"] == confidence


def test_recovery_actions_thresholds():
    actions = recovery_actions(30.0, 200, {"payment": 4, "network": 3, "other": 3})
    assert [a["priority"] for a in actions] == ["high", "medium", "medium", "low"]

    assert recovery_actions(90.0, 10, {"other": 1}) == []


async def test_analyze_job_errors_groups_by_category(db_session, seed):
    plan = await seed.plan()
    job = await seed.job(plan, status=JobStatus.failed)
    await seed.attempt(
        job, await seed.due_subscription(plan), success=False,
        error_message="Stripe error: card declined", error_category=ErrorCategory.payment,
    )
    # Uncategorized rows fall back to keyword classification
    await seed.attempt(
        job, await seed.due_subscription(plan), success=False, error_message="Connection reset",
    )
    await seed.attempt(job, await seed.due_subscription(plan), success=True)

    analysis = await ErrorHandlerService(db_session).analyze_job_errors(job.id)

    assert analysis["total_failed_attempts"] == 2
    assert analysis["errors_by_category"] == {"payment": 1, "network": 1}
    assert analysis["can_retry"] is True
    assert analysis["estimated_retry_minutes"] == 60
    assert set(analysis["category_recommendations"]) == {"payment", "network"}


async def test_analyze_notice_job_explains_retry_scope(db_session, seed):
    plan = await seed.plan()
    job = await seed.job(plan, JobType.notice, status=JobStatus.failed, created_ago=timedelta(days=8))

    analysis = await ErrorHandlerService(db_session).analyze_job_errors(job.id)

    assert analysis["can_retry"] is False
    assert analysis["estimated_retry_minutes"] is None
    assert "too old" in analysis["recommendation"]


async def test_failed_jobs_for_retry_lists_recent_failures(db_session, seed):
    plan = await seed.plan(name="Starter")
    recent = await seed.job(plan, status=JobStatus.failed, created_ago=timedelta(hours=2))
    await seed.job(plan, status=JobStatus.failed, created_ago=timedelta(hours=30))
    await seed.job(plan, status=JobStatus.completed)

    jobs = await ErrorHandlerService(db_session).get_failed_jobs_for_retry()

    assert [j["id"] for j in jobs] == [recent.id]
    assert jobs[0]["plan_name"] == "Starter"
    assert jobs[0]["can_retry"] is True


async def test_system_error_summary(db_session, seed):
    plan = await seed.plan()
    job = await seed.job(plan, status=JobStatus.failed)
    for _ in range(3):
        await seed.attempt(
            job, await seed.due_subscription(plan), success=False,
            error_message="Stripe error: card declined", error_category=ErrorCategory.payment,
        )
    await seed.attempt(job, await seed.due_subscription(plan), success=True)

    summary = await ErrorHandlerService(db_session).get_system_error_summary()

    assert summary["failed_jobs_24h"] == 1
    assert summary["total_attempts_24h"] == 4
    assert summary["error_rate"] == 0.75
    assert summary["common_errors"][0]["count"] == 3
    assert summary["system_health"] == HealthStatus.warning
    assert sum(day["failures"] for day in summary["daily_trends"]) == 3


async def test_recommend_recovery_for_plan(db_session, seed):
    plan = await seed.plan()
    job = await seed.job(plan, status=JobStatus.completed)
    for _ in range(3):
        await seed.attempt(
            job, await seed.due_subscription(plan), success=False,
            error_category=ErrorCategory.payment,
        )
    await seed.attempt(job, await seed.due_subscription(plan), success=True)

    recommendation = await ErrorHandlerService(db_session).recommend_recovery(plan_id=plan.id)

    assert recommendation["jobs_analyzed"] == 1
    assert recommendation["success_rate"] == 25.0
    assert recommendation["dominant_error_category"] == ErrorCategory.payment
    assert recommendation["strategy"] == RetryStrategy.delayed
    assert recommendation["actions"][0]["priority"] == "high"
