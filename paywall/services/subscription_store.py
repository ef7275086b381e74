import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.models import Subscription, SubscriptionStatus, SubscriptionTier

logger = logging.getLogger(__name__)


def has_paid_access(sub: Optional[Subscription], now: datetime) -> bool:
    """
    PAID tier and either ACTIVE, or CANCELED with the paid period still running.

    The second case is the cancellation grace period.
    """
    if sub is None or sub.tier != SubscriptionTier.PAID:
        return False
    if sub.status == SubscriptionStatus.ACTIVE:
        return True
    if sub.status == SubscriptionStatus.CANCELED:
        return sub.current_period_end is not None and sub.current_period_end > now
    return False


def grace_expired(sub: Optional[Subscription], now: datetime) -> bool:
    """True for a cancellation whose paid period has ended."""
    return (
        sub is not None
        and sub.status == SubscriptionStatus.CANCELED
        and sub.current_period_end is not None
        and sub.current_period_end <= now
    )


class SubscriptionStore:
    """
    Data access for pw_subscriptions.

    No commits here; the calling service owns the transaction.
    """

    async def get_by_user(
        self, db: AsyncSession, user_id: UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(
        self, db: AsyncSession, external_subscription_id: str
    ) -> Optional[Subscription]:
        """Row lock keeps concurrent events for one subscription serialized."""
        result = await db.execute(
            select(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_unlinked_by_customer_id(
        self, db: AsyncSession, external_customer_id: str
    ) -> Optional[Subscription]:
        """Row for a Stripe customer that has no Stripe subscription attached yet."""
        result = await db.execute(
            select(Subscription)
            .where(
                Subscription.external_customer_id == external_customer_id,
                Subscription.external_subscription_id.is_(None),
            )
            .with_for_update()
        )
        return result.scalars().first()

    def add(
        self,
        db: AsyncSession,
        user_id: UUID,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Subscription:
        sub = Subscription(
            user_id=user_id,
            tier=tier,
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=False,
        )
        db.add(sub)
        return sub

    def set_status(self, sub: Subscription, status: SubscriptionStatus, now: datetime) -> None:
        """Set status, stamping past_due_since on entry to PAST_DUE and clearing it on exit."""
        if status == SubscriptionStatus.PAST_DUE:
            if sub.past_due_since is None:
                sub.past_due_since = now
        else:
            sub.past_due_since = None
        sub.status = status

    async def list_past_due_before(self, db: AsyncSession, cutoff: datetime) -> list[Subscription]:
        result = await db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.past_due_since.is_not(None),
                Subscription.past_due_since < cutoff,
            )
        )
        return list(result.scalars().all())


subscription_store = SubscriptionStore()
