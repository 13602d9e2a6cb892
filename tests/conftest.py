from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FILE", os.devnull)
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.api.dependencies.auth import get_current_user
from app.api.dependencies.gateway import get_payment_gateway
from app.api.v1.routes.router import router as api_router
from app.core.exceptions import register_exception_handlers
from app.db.deps import Base, get_db
from app.models.job_attempt import JobAttempt
from app.models.migration_job import MigrationJob
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import Role, User
from app.utils.enums import ErrorCategory, JobStatus, JobType, SubscriptionStatus


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Ensure pytest-anyio uses asyncio for all async tests."""
    return "asyncio"


class FakeGateway:
    """In-memory PaymentGateway; set ``fail_subscriptions`` to inject failures."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = 0
        self.products: List[str] = []
        self.prices: List[Dict] = []
        self.updates: List[tuple[str, str]] = []
        self.fail_create_price: Optional[Exception] = None
        self.fail_subscriptions: Dict[str, Exception] = {}

    def _next(self, prefix: str) -> str:
        with self._lock:
            self._counter += 1
            return f"{prefix}_{self._counter}"

    def create_product(self, name: str, active: bool = True) -> str:
        product_id = self._next("prod")
        self.products.append(product_id)
        return product_id

    def create_price(self, amount, currency, product, interval="month", metadata=None) -> str:
        if self.fail_create_price:
            raise self.fail_create_price
        price_id = self._next("price")
        self.prices.append({"id": price_id, "amount": amount, "currency": currency, "product": product})
        return price_id

    def update_subscription_price(self, subscription_ref: str, new_price_ref: str):
        if subscription_ref in self.fail_subscriptions:
            raise self.fail_subscriptions[subscription_ref]
        with self._lock:
            self.updates.append((subscription_ref, new_price_ref))
        return {"id": subscription_ref, "price": new_price_ref}


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


class Seeder:
    """Committed fixtures rows; other sessions (scheduler, routes) can see them."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._users = 0

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        await self.session.refresh(obj)
        return obj

    async def admin(self, email: str = "admin@example.com") -> User:
        return await self._save(
            User(first_name="Ada", last_name="Admin", email=email, role=Role.admin, is_active=True)
        )

    async def customer(self, business_name: Optional[str] = "Acme Motors") -> User:
        self._users += 1
        return await self._save(
            User(
                first_name="Casey",
                last_name=f"Customer{self._users}",
                business_name=business_name,
                email=f"customer{self._users}@example.com",
                role=Role.user,
                is_active=True,
            )
        )

    async def plan(
        self,
        name: str = "Professional",
        price_pence: int = 4900,
        stripe_price_id: Optional[str] = "price_current",
        stripe_product_id: Optional[str] = "prod_existing",
    ) -> Plan:
        return await self._save(
            Plan(
                name=name,
                price_pence=price_pence,
                currency="GBP",
                stripe_price_id=stripe_price_id,
                stripe_product_id=stripe_product_id,
            )
        )

    async def subscription(
        self,
        plan: Plan,
        user: Optional[User] = None,
        *,
        price_pence: Optional[int] = None,
        grandfathered: bool = False,
        noticed_days_ago: Optional[float] = None,
        due_in_days: Optional[float] = None,
        status: SubscriptionStatus = SubscriptionStatus.active,
        stripe_subscription_id: Optional[str] = None,
        suspended_at: Optional[datetime] = None,
    ) -> Subscription:
        user = user or await self.customer()
        now = datetime.now(timezone.utc)
        sub = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            price_pence=price_pence if price_pence is not None else plan.price_pence,
            original_price_pence=price_pence if grandfathered else None,
            is_grandfathered=grandfathered,
            notice_sent_at=now - timedelta(days=noticed_days_ago) if noticed_days_ago is not None else None,
            migration_scheduled_at=now + timedelta(days=due_in_days) if due_in_days is not None else None,
            stripe_subscription_id=stripe_subscription_id or f"sub_{uuid.uuid4().hex[:10]}",
            suspended_at=suspended_at,
        )
        return await self._save(sub)

    async def due_subscription(self, plan: Plan, old_price: int = 3900, **kwargs) -> Subscription:
        """Grandfathered, noticed 31 days ago, due yesterday."""
        return await self.subscription(
            plan,
            price_pence=old_price,
            grandfathered=True,
            noticed_days_ago=31,
            due_in_days=-1,
            **kwargs,
        )

    async def job(
        self,
        plan: Plan,
        job_type: JobType = JobType.migration,
        status: JobStatus = JobStatus.pending,
        *,
        created_ago: Optional[timedelta] = None,
        started_ago: Optional[timedelta] = None,
        total_count: int = 0,
        success_count: int = 0,
        failed_count: int = 0,
        scheduled_for: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> MigrationJob:
        now = datetime.now(timezone.utc)
        return await self._save(
            MigrationJob(
                plan_id=plan.id,
                job_type=job_type,
                status=status,
                total_count=total_count,
                success_count=success_count,
                failed_count=failed_count,
                created_at=now - (created_ago or timedelta(0)),
                started_at=now - started_ago if started_ago else None,
                scheduled_for=scheduled_for,
                batch_size=batch_size,
            )
        )

    async def attempt(
        self,
        job: MigrationJob,
        subscription: Subscription,
        *,
        success: bool,
        error_message: Optional[str] = None,
        error_category: Optional[ErrorCategory] = None,
        attempt_number: int = 1,
        created_ago: Optional[timedelta] = None,
        finalized: bool = True,
    ) -> JobAttempt:
        now = datetime.now(timezone.utc)
        created = now - (created_ago or timedelta(0))
        return await self._save(
            JobAttempt(
                job_id=job.id,
                subscription_id=subscription.id,
                owner_id=subscription.user_id,
                attempt_number=attempt_number,
                success=success,
                error_message=error_message,
                error_category=error_category,
                created_at=created,
                finalized_at=created if finalized else None,
            )
        )


@pytest.fixture()
def seed(db_session) -> Seeder:
    return Seeder(db_session)


@pytest.fixture()
def test_app() -> FastAPI:
    app = FastAPI()
    app.include_router(api_router, prefix="/api/v1")
    register_exception_handlers(app)
    return app


@pytest.fixture()
async def client(
    test_app: FastAPI, db_session: AsyncSession, gateway: FakeGateway
) -> AsyncGenerator[AsyncClient, None]:
    async def _get_test_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def _get_admin_user():
        result = await db_session.execute(select(User).where(User.role == Role.admin).limit(1))
        user = result.scalar_one_or_none()
        if user is None:
            user = await Seeder(db_session).admin()
        return user

    test_app.dependency_overrides[get_db] = _get_test_db
    test_app.dependency_overrides[get_current_user] = _get_admin_user
    test_app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client

    test_app.dependency_overrides.clear()
