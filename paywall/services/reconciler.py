"""
State reconciler: Stripe events and lookups -> local subscription state.

Every mutation assigns a value rather than incrementing one, so replayed or
reordered events converge on the same row. Events for subscriptions with no
local row are skipped: rows are only created by signup and the synchronous
upgrade path. A Checkout subscription is matched to its row by customer id.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.config import settings
from paywall.models import (
    BillingEvent, Payment, PaymentStatus, Subscription, SubscriptionStatus, SubscriptionTier,
)
from paywall.services.gateway_events import (
    EventKind, GatewayEvent, GatewaySubscription, map_gateway_status,
)
from paywall.services.quota_store import quota_store
from paywall.services.subscription_store import grace_expired, subscription_store

logger = logging.getLogger(__name__)


class StateReconciler:

    def __init__(self, gateway=None):
        # gateway: anything with `async get_subscription(id) -> GatewaySubscription`
        self.gateway = gateway

    # ============ Event ingestion ============

    async def apply(self, db: AsyncSession, event: GatewayEvent, now: Optional[datetime] = None) -> bool:
        """
        Apply one verified gateway event and commit.

        Returns True if local state was mutated. Unknown kinds, redelivered
        event ids and events without a matching local row return False.
        """
        now = now or datetime.utcnow()

        if event.kind is None:
            logger.info(f"[Reconciler] ignoring event type {event.event_type}")
            return False

        if not await self._log_event(db, event):
            logger.info(f"[Reconciler] duplicate delivery {event.event_id} ({event.event_type}), skipping")
            return False

        if not event.external_subscription_id:
            logger.info(f"[Reconciler] {event.event_type} {event.event_id} has no subscription, skipping")
            await db.commit()
            return False

        sub = await subscription_store.get_by_external_id(db, event.external_subscription_id)
        if sub is None:
            sub = await self._link_checkout_subscription(db, event)
        if sub is None:
            logger.info(
                f"[Reconciler] subscription {event.external_subscription_id} not found locally, "
                f"skipping {event.event_type}"
            )
            await db.commit()
            return False

        if event.kind in (EventKind.subscription_created, EventKind.subscription_updated):
            await self._on_subscription_changed(db, sub, event, now)
        elif event.kind == EventKind.subscription_deleted:
            await self._on_subscription_deleted(db, sub)
        elif event.kind == EventKind.invoice_paid:
            await self._on_invoice_paid(db, sub, event)
        elif event.kind == EventKind.invoice_failed:
            await self._on_invoice_failed(db, sub, event, now)

        await db.commit()
        logger.info(
            f"✅ [Reconciler] {event.event_type} applied to {event.external_subscription_id} "
            f"tier={sub.tier.value} status={sub.status.value}"
        )
        return True

    async def _log_event(self, db: AsyncSession, event: GatewayEvent) -> bool:
        """Append to pw_billing_events. False if this event id was already seen."""
        if not event.event_id:
            return True

        existing = await db.execute(
            select(BillingEvent.id).where(BillingEvent.external_event_id == event.event_id)
        )
        if existing.scalar_one_or_none() is not None:
            return False

        try:
            async with db.begin_nested():
                db.add(BillingEvent(
                    external_event_id=event.event_id,
                    event_type=event.event_type,
                    external_subscription_id=event.external_subscription_id,
                    payload=event.model_dump(mode="json"),
                ))
        except IntegrityError:
            return False
        return True

    async def _link_checkout_subscription(self, db: AsyncSession, event: GatewayEvent) -> Optional[Subscription]:
        """
        Attach a subscription started through hosted Checkout to its row.

        Checkout stores only the customer id locally; the first subscription
        event for that customer fills in the subscription id. Never creates a row.
        """
        if event.kind not in (EventKind.subscription_created, EventKind.subscription_updated):
            return None
        if not event.customer_id:
            return None
        sub = await subscription_store.get_unlinked_by_customer_id(db, event.customer_id)
        if sub is None:
            return None
        sub.external_subscription_id = event.external_subscription_id
        logger.info(
            f"🔗 [Reconciler] linked {event.external_subscription_id} to user {sub.user_id} "
            f"via customer {event.customer_id}"
        )
        return sub

    async def _on_subscription_changed(
        self, db: AsyncSession, sub: Subscription, event: GatewayEvent, now: datetime
    ) -> None:
        snapshot = GatewaySubscription(
            id=event.external_subscription_id,
            customer_id=event.customer_id,
            status=event.status or "",
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            cancel_at_period_end=event.cancel_at_period_end,
        )
        await self.apply_snapshot(db, sub, snapshot, now)

    async def apply_snapshot(
        self,
        db: AsyncSession,
        sub: Subscription,
        snapshot: GatewaySubscription,
        now: datetime,
    ) -> SubscriptionStatus:
        """
        The "subscription created/updated" mutation, shared with the upgrade path.

        Sets tier PAID with the mapped status; ACTIVE lifts the article limit.
        Does not commit.
        """
        status = map_gateway_status(snapshot.status)
        sub.tier = SubscriptionTier.PAID
        subscription_store.set_status(sub, status, now)
        if snapshot.current_period_start is not None:
            sub.current_period_start = snapshot.current_period_start
        if snapshot.current_period_end is not None:
            sub.current_period_end = snapshot.current_period_end
        sub.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.customer_id:
            sub.external_customer_id = snapshot.customer_id

        if status == SubscriptionStatus.ACTIVE:
            await quota_store.set_limit(db, sub.user_id, settings.unlimited_article_limit)
        return status

    async def _on_subscription_deleted(self, db: AsyncSession, sub: Subscription) -> None:
        sub.status = SubscriptionStatus.CANCELED
        sub.tier = SubscriptionTier.FREE
        sub.cancel_at_period_end = True
        sub.past_due_since = None
        await quota_store.set_limit(db, sub.user_id, settings.free_article_limit)

    async def _on_invoice_paid(self, db: AsyncSession, sub: Subscription, event: GatewayEvent) -> None:
        await self._append_payment(db, sub, event, PaymentStatus.succeeded)
        sub.status = SubscriptionStatus.ACTIVE
        sub.tier = SubscriptionTier.PAID
        sub.past_due_since = None
        await quota_store.set_limit(db, sub.user_id, settings.unlimited_article_limit)

    async def _on_invoice_failed(
        self, db: AsyncSession, sub: Subscription, event: GatewayEvent, now: datetime
    ) -> None:
        await self._append_payment(db, sub, event, PaymentStatus.failed)
        subscription_store.set_status(sub, SubscriptionStatus.PAST_DUE, now)
        if self.past_due_lapsed(sub, now):
            await quota_store.set_limit(db, sub.user_id, settings.free_article_limit)
            logger.info(
                f"⚠️ [Reconciler] {sub.external_subscription_id} past due since "
                f"{sub.past_due_since.isoformat()}, free limit restored"
            )

    @staticmethod
    def past_due_lapsed(sub: Subscription, now: datetime) -> bool:
        """PAST_DUE for longer than the grace window."""
        return (
            sub.status == SubscriptionStatus.PAST_DUE
            and sub.past_due_since is not None
            and now - sub.past_due_since > timedelta(days=settings.past_due_grace_days)
        )

    async def _append_payment(
        self,
        db: AsyncSession,
        sub: Subscription,
        event: GatewayEvent,
        status: PaymentStatus,
    ) -> bool:
        """Append a payment row unless this invoice already has one with this status."""
        if event.invoice_id:
            existing = await db.execute(
                select(Payment.id).where(
                    Payment.external_invoice_id == event.invoice_id,
                    Payment.status == status,
                )
            )
            if existing.scalar_one_or_none() is not None:
                logger.info(f"[Reconciler] payment for invoice {event.invoice_id} ({status.value}) already recorded")
                return False

        try:
            async with db.begin_nested():
                db.add(Payment(
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    amount=event.amount,
                    currency=event.currency,
                    status=status,
                    external_payment_id=event.payment_intent_id,
                    external_invoice_id=event.invoice_id,
                ))
        except IntegrityError:
            logger.info(f"[Reconciler] payment for invoice {event.invoice_id} recorded concurrently")
            return False
        return True

    # ============ On-demand refresh ============

    async def refresh(self, db: AsyncSession, user_id: UUID, now: Optional[datetime] = None) -> Optional[Subscription]:
        """
        Pull authoritative state from Stripe for one user and commit it.

        Returns the local row (None if the user has none). Raises
        GatewayUnavailableError without touching local state if Stripe fails.
        """
        now = now or datetime.utcnow()
        sub = await subscription_store.get_by_user(db, user_id)
        if sub is None or not sub.external_subscription_id:
            return sub

        external_id = sub.external_subscription_id
        # No transaction stays open across the gateway call
        await db.commit()
        snapshot = await self.gateway.get_subscription(external_id)

        sub = await subscription_store.get_by_user(db, user_id, for_update=True)
        status = map_gateway_status(snapshot.status)
        subscription_store.set_status(sub, status, now)
        if snapshot.current_period_start is not None:
            sub.current_period_start = snapshot.current_period_start
        if snapshot.current_period_end is not None:
            sub.current_period_end = snapshot.current_period_end
        sub.cancel_at_period_end = snapshot.cancel_at_period_end

        if grace_expired(sub, now):
            sub.tier = SubscriptionTier.FREE
            await quota_store.set_limit(db, user_id, settings.free_article_limit)
            logger.info(f"[Reconciler] subscription {sub.external_subscription_id} has ended, free limit restored")
        elif status == SubscriptionStatus.ACTIVE and sub.tier == SubscriptionTier.PAID:
            await quota_store.set_limit(db, user_id, settings.unlimited_article_limit)
        elif self.past_due_lapsed(sub, now):
            await quota_store.set_limit(db, user_id, settings.free_article_limit)

        await db.commit()
        logger.info(f"✅ [Reconciler] refreshed user={user_id} status={status.value}")
        return sub
