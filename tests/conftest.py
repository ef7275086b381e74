"""
Pytest configuration and fixtures for testing
"""
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from paywall.database import Base
from paywall.errors import GatewayUnavailableError
from paywall.models import Subscription, SubscriptionStatus, SubscriptionTier, UserAccount
from paywall.services.gateway_events import GatewaySubscription

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for service-level tests
NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
async def session_factory():
    """
    Fresh in-memory database per test.

    The connect/begin hooks let SQLite honour SAVEPOINT the way Postgres does.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from paywall import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )
    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """A session for the test body."""
    async with session_factory() as session:
        yield session


class FakeGateway:
    """In-process stand-in for StripeGateway."""

    def __init__(self):
        self.customers_created: list[tuple[str, Optional[str]]] = []
        self.subscriptions_created: list[tuple[str, str, str]] = []
        self.cancelled: list[str] = []
        self.next_subscription: Optional[GatewaySubscription] = None
        self.remote: dict[str, GatewaySubscription] = {}
        self.fail_with: Optional[Exception] = None
        self.checkouts: list[tuple[str, str, str, str]] = []
        self.portals: list[tuple[str, str]] = []
        # Set to the service's session to record whether a transaction is open at each call
        self.session: Optional[AsyncSession] = None
        self.open_transaction_seen: list[bool] = []

    def _maybe_fail(self):
        if self.session is not None:
            self.open_transaction_seen.append(self.session.in_transaction())
        if self.fail_with is not None:
            raise self.fail_with

    async def create_customer(self, email: str, name: Optional[str] = None) -> str:
        self._maybe_fail()
        self.customers_created.append((email, name))
        return f"cus_{len(self.customers_created)}"

    async def ensure_price(self) -> str:
        self._maybe_fail()
        return "price_member"

    async def create_subscription(self, customer_id: str, price_id: str, payment_method_id: str) -> GatewaySubscription:
        self._maybe_fail()
        self.subscriptions_created.append((customer_id, price_id, payment_method_id))
        snapshot = self.next_subscription or GatewaySubscription(
            id=f"sub_{len(self.subscriptions_created)}",
            customer_id=customer_id,
            status="active",
            current_period_start=datetime.utcnow(),
            current_period_end=datetime.utcnow() + timedelta(days=30),
        )
        self.remote[snapshot.id] = snapshot
        return snapshot

    async def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._maybe_fail()
        self.cancelled.append(subscription_id)
        snapshot = self.remote.get(subscription_id) or GatewaySubscription(
            id=subscription_id,
            status="active",
            current_period_end=datetime.utcnow() + timedelta(days=30),
        )
        snapshot = snapshot.model_copy(update={"cancel_at_period_end": True})
        self.remote[subscription_id] = snapshot
        return snapshot

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._maybe_fail()
        if subscription_id not in self.remote:
            raise GatewayUnavailableError(f"unknown subscription {subscription_id}")
        return self.remote[subscription_id]

    async def create_checkout_session(self, customer_id: str, price_id: str, success_url: str, cancel_url: str) -> str:
        self._maybe_fail()
        self.checkouts.append((customer_id, price_id, success_url, cancel_url))
        return f"https://checkout.stripe.test/c/{len(self.checkouts)}"

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        self._maybe_fail()
        self.portals.append((customer_id, return_url))
        return f"https://billing.stripe.test/p/{customer_id}"


@pytest.fixture
def gateway():
    return FakeGateway()


async def make_account(
    db: AsyncSession,
    user_id: Optional[UUID] = None,
    articles_read: int = 0,
    limit: int = 5,
    last_reset: Optional[datetime] = None,
) -> UserAccount:
    account = UserAccount(
        id=user_id or uuid4(),
        articles_read_this_month=articles_read,
        monthly_article_limit=limit,
        last_article_reset_date=last_reset,
    )
    db.add(account)
    await db.commit()
    return account


async def make_subscription(
    db: AsyncSession,
    user_id: UUID,
    tier: SubscriptionTier = SubscriptionTier.PAID,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    current_period_end: Optional[datetime] = None,
    external_subscription_id: Optional[str] = "sub_123",
    past_due_since: Optional[datetime] = None,
) -> Subscription:
    sub = Subscription(
        user_id=user_id,
        tier=tier,
        status=status,
        current_period_start=NOW - timedelta(days=15),
        current_period_end=current_period_end or NOW + timedelta(days=15),
        cancel_at_period_end=False,
        external_customer_id="cus_123" if external_subscription_id else None,
        external_subscription_id=external_subscription_id,
        past_due_since=past_due_since,
    )
    db.add(sub)
    await db.commit()
    return sub
