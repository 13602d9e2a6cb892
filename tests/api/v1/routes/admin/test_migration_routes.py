from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.api.dependencies.auth import get_current_user
from app.core.security import create_access_token
from app.models.migration_job import MigrationJob
from app.models.subscription import Subscription
from app.utils.enums import JobStatus, JobType


pytestmark = pytest.mark.anyio

BASE = "/api/v1/admin/migrations"


async def test_list_and_create_jobs(client, seed):
	plan = await seed.plan(name="Starter")
	await seed.due_subscription(plan)
	await seed.due_subscription(plan)
	await seed.job(plan, status=JobStatus.completed, created_ago=timedelta(hours=1))

	created = await client.post(
		f"{BASE}/jobs", json={"plan_id": str(plan.id), "job_type": "migration"}
	)
	assert created.status_code == 201
	job = created.json()["data"]
	assert job["status"] == "pending"
	assert job["total_count"] == 2

	listed = await client.get(f"{BASE}/jobs", params={"plan_id": str(plan.id), "limit": 1})
	assert listed.status_code == 200
	body = listed.json()
	assert body["status"] == "success"
	assert body["data"]["total"] == 2
	assert body["data"]["has_more"] is True
	assert body["data"]["jobs"][0]["id"] == job["id"]
	assert body["data"]["jobs"][0]["plan_name"] == "Starter"

	pending = await client.get(f"{BASE}/jobs", params={"status": "pending"})
	assert pending.json()["data"]["total"] == 1


async def test_job_details_and_missing_job(client, seed):
	plan = await seed.plan()
	sub = await seed.due_subscription(plan)
	job = await seed.job(plan, status=JobStatus.completed, total_count=1, success_count=1)
	await seed.attempt(job, sub, success=True)

	details = await client.get(f"{BASE}/jobs/{job.id}")
	assert details.status_code == 200
	data = details.json()["data"]
	assert data["progress_percentage"] == 100
	assert len(data["attempts"]) == 1

	missing = await client.get(f"{BASE}/jobs/{uuid.uuid4()}")
	assert missing.status_code == 404
	body = missing.json()
	assert body["status"] == "error"
	assert body["error_code"] == "NOT_FOUND"
	assert body["category"] == "validation"


async def test_cancel_job_conflicts_on_completed(client, seed):
	plan = await seed.plan()
	running = await seed.job(plan, status=JobStatus.running)
	done = await seed.job(plan, status=JobStatus.completed)

	ok = await client.post(f"{BASE}/jobs/{running.id}/cancel", json={"reason": "Wrong plan"})
	assert ok.status_code == 200
	assert ok.json()["data"]["status"] == "cancelled"
	assert ok.json()["data"]["error_message"] == "Cancelled: Wrong plan"

	conflict = await client.post(f"{BASE}/jobs/{done.id}/cancel")
	assert conflict.status_code == 409
	assert conflict.json()["error_code"] == "INVALID_STATE"
	assert conflict.json()["msg"] == "Cannot cancel a completed job"


async def test_price_version_uses_gateway(client, seed, gateway, db_session):
	plan = await seed.plan(price_pence=3000)
	subs = [await seed.subscription(plan) for _ in range(3)]

	response = await client.post(
		f"{BASE}/plans/{plan.id}/price-version", json={"new_price_pence": 4900}
	)

	assert response.status_code == 200
	data = response.json()["data"]
	assert data["grandfathered_subscriptions"] == 3
	assert data["stripe_price_id"] == gateway.prices[0]["id"]
	for sub in subs:
		await db_session.refresh(sub)
		assert sub.original_price_pence == 3000

	invalid = await client.post(f"{BASE}/plans/{plan.id}/price-version", json={"new_price_pence": 0})
	assert invalid.status_code == 400
	assert invalid.json()["error_code"] == "VALIDATION_ERROR"


async def test_notice_and_bulk_requests_only_queue_jobs(client, seed, gateway, db_session):
	plan = await seed.plan()
	await seed.subscription(plan, price_pence=3000, grandfathered=True)
	await seed.due_subscription(plan)

	notices = await client.post(f"{BASE}/plans/{plan.id}/notices", json={"notice_period_days": 14})
	assert notices.status_code == 202
	assert notices.json()["data"]["job_type"] == "notice"
	assert notices.json()["data"]["status"] == "pending"

	too_short = await client.post(
		f"{BASE}/plans/{plan.id}/notices", json={"notice_period_days": 0.1}
	)
	assert too_short.status_code == 400

	bulk = await client.post(f"{BASE}/plans/{plan.id}/bulk-migrate", json={"batch_size": 10})
	assert bulk.status_code == 202
	assert bulk.json()["data"]["total_count"] == 1

	assert gateway.updates == []
	jobs = (await db_session.execute(select(MigrationJob))).scalars().all()
	assert {job.status for job in jobs} == {JobStatus.pending}
	assert {job.job_type for job in jobs} == {JobType.notice, JobType.migration}


async def test_migrate_single_subscription(client, seed, gateway, db_session):
	plan = await seed.plan(price_pence=4900, stripe_price_id="price_new")
	sub = await seed.subscription(
		plan, price_pence=3900, grandfathered=True, noticed_days_ago=2, due_in_days=28
	)

	early = await client.post(f"{BASE}/subscriptions/{sub.id}/migrate")
	assert early.status_code == 409

	forced = await client.post(
		f"{BASE}/subscriptions/{sub.id}/migrate", json={"bypass_date_check": True}
	)
	assert forced.status_code == 200
	assert forced.json()["data"]["new_price_pence"] == 4900
	assert gateway.updates == [(sub.stripe_subscription_id, "price_new")]

	stored = (
		await db_session.execute(select(Subscription.price_pence).where(Subscription.id == sub.id))
	).scalar_one()
	assert stored == 4900


async def test_plan_status_endpoint(client, seed):
	plan = await seed.plan(name="Professional")
	await seed.due_subscription(plan)
	await seed.subscription(plan)

	response = await client.get(f"{BASE}/plans/{plan.id}/status")

	totals = response.json()["data"]["totals"]
	assert totals == {
		"total": 2,
		"grandfathered": 1,
		"notice_sent": 1,
		"ready_to_migrate": 1,
		"migrated": 1,
	}


async def test_retry_endpoint_requeues_failed_job(client, seed):
	plan = await seed.plan()
	job = await seed.job(plan, status=JobStatus.failed, created_ago=timedelta(hours=1))
	await seed.attempt(job, await seed.due_subscription(plan), success=False)

	response = await client.post(f"{BASE}/jobs/{job.id}/retry", json={"delay_minutes": 30})

	assert response.status_code == 200
	assert response.json()["msg"] == "Retry scheduled"
	assert response.json()["data"]["cleared_failed_attempts"] == 1


async def test_emergency_stop(client, seed):
	await seed.admin("ops@example.com")
	plan = await seed.plan()
	await seed.job(plan, status=JobStatus.running, success_count=3)
	await seed.job(plan, status=JobStatus.pending)

	response = await client.post(
		f"{BASE}/recovery/emergency-stop", json={"reason": "Wrong price loaded"}
	)

	assert response.status_code == 200
	data = response.json()["data"]
	assert len(data["stopped_jobs"]) == 2
	assert data["stopped_by"] == "ops@example.com"

	short = await client.post(f"{BASE}/recovery/emergency-stop", json={"reason": "x"})
	assert short.status_code == 422


async def test_monitoring_endpoints(client, seed):
	plan = await seed.plan()
	await seed.job(plan, status=JobStatus.running, started_ago=timedelta(hours=3))

	health = await client.get(f"{BASE}/monitoring/health")
	assert health.json()["data"]["status"] == "warning"

	alerts = await client.get(f"{BASE}/monitoring/alerts", params={"severity": "warning"})
	assert alerts.json()["data"]["total"] == 1

	dashboard = await client.get(f"{BASE}/monitoring/dashboard")
	assert dashboard.status_code == 200
	assert dashboard.json()["data"]["overview"]["running_jobs"] == 1


async def test_routes_require_admin(client, test_app, seed):
	customer = await seed.customer()
	test_app.dependency_overrides[get_current_user] = lambda: customer

	response = await client.get(f"{BASE}/jobs")

	assert response.status_code == 403


async def test_routes_accept_bearer_token(client, test_app, seed):
	admin = await seed.admin()
	test_app.dependency_overrides.pop(get_current_user)

	anonymous = await client.get(f"{BASE}/jobs")
	assert anonymous.status_code == 401

	forged = await client.get(f"{BASE}/jobs", headers={"Authorization": "Bearer not-a-jwt"})
	assert forged.status_code == 401

	token = create_access_token(str(admin.id))
	response = await client.get(f"{BASE}/jobs", headers={"Authorization": f"Bearer {token}"})
	assert response.status_code == 200
	assert response.json()["data"]["total"] == 0
