"""
Subscription commands: free signup, synchronous upgrade, hosted Checkout,
billing portal and cancel.

Gateway first, local second: nothing is written locally until Stripe has
confirmed the change, so a gateway failure leaves the store untouched.
"""
import calendar
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from paywall.errors import SubscriptionNotFoundError
from paywall.models import Subscription, SubscriptionStatus, SubscriptionTier
from paywall.services.quota_store import quota_store
from paywall.services.reconciler import StateReconciler
from paywall.services.subscription_store import subscription_store

logger = logging.getLogger(__name__)


def add_one_month(dt: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = dt.year + (1 if dt.month == 12 else 0)
    month = 1 if dt.month == 12 else dt.month + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


class SubscriptionService:

    def __init__(self, gateway, reconciler: Optional[StateReconciler] = None):
        self.gateway = gateway
        self.reconciler = reconciler or StateReconciler(gateway)

    async def create_free_subscription(
        self, db: AsyncSession, user_id: UUID, now: Optional[datetime] = None
    ) -> Subscription:
        """Signup path. Idempotent: returns the existing row if there is one."""
        now = now or datetime.utcnow()
        await quota_store.ensure_account(db, user_id)

        sub = await subscription_store.get_by_user(db, user_id)
        if sub:
            return sub

        sub = subscription_store.add(
            db,
            user_id,
            tier=SubscriptionTier.FREE,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=add_one_month(now),
        )
        await db.commit()
        await db.refresh(sub)
        logger.info(f"✅ [Subscription] free subscription created for user {user_id}")
        return sub

    async def upgrade(
        self,
        db: AsyncSession,
        user_id: UUID,
        payment_method_id: str,
        email: str,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create (or reuse) the Stripe customer, subscribe, then mirror locally.

        The only path that creates a row carrying an external subscription id.
        Gateway errors propagate before any local write.
        """
        now = now or datetime.utcnow()
        existing = await subscription_store.get_by_user(db, user_id)

        customer_id = existing.external_customer_id if existing else None
        # No transaction stays open across the gateway calls
        await db.commit()
        if not customer_id:
            customer_id = await self.gateway.create_customer(email, name)

        price_id = await self.gateway.ensure_price()
        snapshot = await self.gateway.create_subscription(customer_id, price_id, payment_method_id)

        # Stripe confirmed; now the local write
        await quota_store.ensure_account(db, user_id)
        sub = await subscription_store.get_by_user(db, user_id, for_update=True)
        if sub is None:
            sub = subscription_store.add(db, user_id, current_period_start=now)

        sub.external_customer_id = customer_id
        sub.external_subscription_id = snapshot.id
        status = await self.reconciler.apply_snapshot(db, sub, snapshot, now)

        await db.commit()
        await db.refresh(sub)
        logger.info(
            f"✅ [Subscription] user {user_id} upgraded, stripe_sub={snapshot.id} status={status.value}"
        )
        return sub

    async def cancel(self, db: AsyncSession, user_id: UUID, now: Optional[datetime] = None) -> Subscription:
        """
        Cancel at period end.

        The article limit is left alone: the reader keeps paid access until
        current_period_end, then the gate or the deleted event downgrades.
        """
        now = now or datetime.utcnow()
        sub = await subscription_store.get_by_user(db, user_id)
        if sub is None:
            raise SubscriptionNotFoundError()

        external_id = sub.external_subscription_id
        await db.commit()

        period_end = None
        if external_id:
            snapshot = await self.gateway.cancel_subscription(external_id)
            period_end = snapshot.current_period_end

        sub = await subscription_store.get_by_user(db, user_id, for_update=True)
        subscription_store.set_status(sub, SubscriptionStatus.CANCELED, now)
        sub.cancel_at_period_end = True
        if period_end is not None:
            sub.current_period_end = period_end

        await db.commit()
        await db.refresh(sub)
        logger.info(f"✅ [Subscription] user {user_id} cancelled, access until {sub.current_period_end}")
        return sub

    async def create_checkout_session(
        self,
        db: AsyncSession,
        user_id: UUID,
        email: str,
        success_url: str,
        cancel_url: str,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Start a hosted Stripe Checkout for the membership price.

        Makes sure the user has a signup row carrying their Stripe customer id;
        the reconciler links the subscription Checkout creates through that id.
        Returns the Checkout URL.
        """
        sub = await self.create_free_subscription(db, user_id, now=now)
        customer_id = sub.external_customer_id
        await db.commit()

        if not customer_id:
            customer_id = await self.gateway.create_customer(email, name)
            sub = await subscription_store.get_by_user(db, user_id, for_update=True)
            sub.external_customer_id = customer_id
            await db.commit()

        price_id = await self.gateway.ensure_price()
        url = await self.gateway.create_checkout_session(customer_id, price_id, success_url, cancel_url)
        logger.info(f"🚀 [Subscription] checkout started for user {user_id}, customer={customer_id}")
        return url

    async def create_billing_portal_session(self, db: AsyncSession, user_id: UUID, return_url: str) -> str:
        """Stripe Billing Portal URL for a user who already has a Stripe customer."""
        sub = await subscription_store.get_by_user(db, user_id)
        if sub is None or not sub.external_customer_id:
            raise SubscriptionNotFoundError("No billing account found")
        customer_id = sub.external_customer_id
        await db.commit()

        return await self.gateway.create_billing_portal_session(customer_id, return_url)
