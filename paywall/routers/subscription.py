"""
Subscription router.

Signup (free), synchronous upgrade, hosted Checkout, billing portal, cancel
and on-demand refresh from Stripe.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.database import get_db
from paywall.dependencies import get_current_user_id, get_reconciler, get_subscription_service
from paywall.errors import PaywallError
from paywall.models import Subscription
from paywall.schemas import (
    BillingPortalRequest,
    CheckoutRequest,
    CreateSubscriptionRequest,
    RedirectResponse,
    RequestedTier,
    SubscriptionEnvelope,
    SubscriptionResponse,
)
from paywall.services.reconciler import StateReconciler
from paywall.services.subscription_service import SubscriptionService
from paywall.services.subscription_store import has_paid_access, subscription_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/subscription", tags=["subscription"])


def _to_response(sub: Optional[Subscription]) -> SubscriptionEnvelope:
    if sub is None:
        return SubscriptionEnvelope(subscription=None)
    return SubscriptionEnvelope(subscription=SubscriptionResponse(
        id=str(sub.id),
        user_id=str(sub.user_id),
        tier=sub.tier,
        status=sub.status,
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        external_customer_id=sub.external_customer_id,
        external_subscription_id=sub.external_subscription_id,
        has_paid_access=has_paid_access(sub, datetime.utcnow()),
        created_at=sub.created_at,
        updated_at=sub.updated_at,
    ))


def _raise_http(e: PaywallError) -> None:
    raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("", response_model=SubscriptionEnvelope)
async def get_subscription(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionEnvelope:
    """Current user's subscription, or null if they have none."""
    sub = await subscription_store.get_by_user(db, user_id)
    return _to_response(sub)


@router.post("", response_model=SubscriptionEnvelope)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionEnvelope:
    """
    Create a subscription.

    - FREE: signup path, idempotent
    - PAID: charges through Stripe, then mirrors the result locally.
      Requires paymentMethodId and email.
    """
    if request.tier == RequestedTier.FREE:
        sub = await service.create_free_subscription(db, user_id)
        return _to_response(sub)

    if not request.payment_method_id or not request.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment method ID and email are required for paid subscriptions"
        )

    try:
        sub = await service.upgrade(
            db,
            user_id,
            payment_method_id=request.payment_method_id,
            email=request.email,
            name=request.name,
        )
    except PaywallError as e:
        logger.error(f"❌ Upgrade failed for user {user_id}: [{e.code}] {e.message}")
        _raise_http(e)

    return _to_response(sub)


@router.delete("", response_model=SubscriptionEnvelope)
async def cancel_subscription(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionEnvelope:
    """Cancel at period end. Paid access continues until current_period_end."""
    try:
        sub = await service.cancel(db, user_id)
    except PaywallError as e:
        logger.error(f"❌ Cancel failed for user {user_id}: [{e.code}] {e.message}")
        _raise_http(e)

    return _to_response(sub)


@router.post("/refresh", response_model=SubscriptionEnvelope)
async def refresh_subscription(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    reconciler: StateReconciler = Depends(get_reconciler),
) -> SubscriptionEnvelope:
    """Pull the authoritative state from Stripe."""
    try:
        sub = await reconciler.refresh(db, user_id)
    except PaywallError as e:
        logger.error(f"❌ Refresh failed for user {user_id}: [{e.code}] {e.message}")
        _raise_http(e)

    if sub is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return _to_response(sub)


@router.post("/checkout", response_model=RedirectResponse)
async def create_checkout_session(
    request: CheckoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> RedirectResponse:
    """
    Start a Stripe-hosted Checkout for the membership.

    The subscription is mirrored locally when Stripe's webhook arrives.
    """
    try:
        url = await service.create_checkout_session(
            db,
            user_id,
            email=request.email,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            name=request.name,
        )
    except PaywallError as e:
        logger.error(f"❌ Checkout failed for user {user_id}: [{e.code}] {e.message}")
        _raise_http(e)

    return RedirectResponse(url=url)


@router.post("/billing-portal", response_model=RedirectResponse)
async def create_billing_portal_session(
    request: BillingPortalRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
) -> RedirectResponse:
    """Stripe Billing Portal for managing the payment method and invoices."""
    try:
        url = await service.create_billing_portal_session(db, user_id, request.return_url)
    except PaywallError as e:
        logger.error(f"❌ Billing portal failed for user {user_id}: [{e.code}] {e.message}")
        _raise_http(e)

    return RedirectResponse(url=url)
