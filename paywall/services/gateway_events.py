"""
Translation of Stripe payloads into typed gateway events.

Holds the two lookup tables the reconciler depends on:
- Stripe event type -> EventKind
- Stripe subscription status -> local SubscriptionStatus
"""
import enum
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from paywall.models import SubscriptionStatus

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    subscription_created = "subscription_created"
    subscription_updated = "subscription_updated"
    subscription_deleted = "subscription_deleted"
    invoice_paid = "invoice_paid"
    invoice_failed = "invoice_failed"


EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.subscription_created,
    "customer.subscription.updated": EventKind.subscription_updated,
    "customer.subscription.deleted": EventKind.subscription_deleted,
    "invoice.payment_succeeded": EventKind.invoice_paid,
    "invoice.payment_failed": EventKind.invoice_failed,
}


class GatewayStatus(str, enum.Enum):
    """Subscription statuses Stripe documents for the pinned API version."""
    active = "active"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    incomplete_expired = "incomplete_expired"
    trialing = "trialing"
    unpaid = "unpaid"


STATUS_MAP: dict[GatewayStatus, SubscriptionStatus] = {
    GatewayStatus.active: SubscriptionStatus.ACTIVE,
    GatewayStatus.past_due: SubscriptionStatus.PAST_DUE,
    GatewayStatus.canceled: SubscriptionStatus.CANCELED,
    GatewayStatus.incomplete: SubscriptionStatus.INCOMPLETE,
    GatewayStatus.incomplete_expired: SubscriptionStatus.INCOMPLETE_EXPIRED,
    GatewayStatus.trialing: SubscriptionStatus.TRIALING,
    GatewayStatus.unpaid: SubscriptionStatus.UNPAID,
}

# Every GatewayStatus member must have a mapping.
_unmapped = set(GatewayStatus) - set(STATUS_MAP)
if _unmapped:
    raise RuntimeError(f"Unmapped gateway statuses: {sorted(s.value for s in _unmapped)}")


def map_gateway_status(raw: Optional[str]) -> SubscriptionStatus:
    """
    Map a Stripe status string to the local enum.

    Total: anything unrecognised becomes CANCELED so a row never sits in an
    unknown state.
    """
    try:
        return STATUS_MAP[GatewayStatus(raw)]
    except ValueError:
        logger.warning(f"⚠️ [Reconciler] unknown gateway status {raw!r}, treating as CANCELED")
        return SubscriptionStatus.CANCELED


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Stripe epoch seconds -> naive UTC datetime (the store is naive UTC)."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class GatewaySubscription(BaseModel):
    """Subscription state as Stripe reports it."""
    id: str
    customer_id: Optional[str] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class GatewayEvent(BaseModel):
    """A verified webhook event reduced to the fields the reconciler uses."""
    event_id: str
    event_type: str
    kind: Optional[EventKind] = None
    external_subscription_id: Optional[str] = None

    # subscription.* events
    customer_id: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    # invoice.* events
    invoice_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None


def _period_bounds(obj: Any) -> tuple[Optional[int], Optional[int]]:
    """
    Read current period bounds.

    Newer Stripe API versions moved them from the subscription onto its items.
    """
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return start, end


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Invoice -> subscription id, for both the legacy and the `parent` layout."""
    sub = invoice.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    sub = details.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    return None


def subscription_from_stripe(obj: Any) -> GatewaySubscription:
    """Build a GatewaySubscription from a Stripe subscription object or dict."""
    start, end = _period_bounds(obj)
    customer = obj.get("customer")
    if customer is not None and not isinstance(customer, str):
        customer = customer.get("id")
    return GatewaySubscription(
        id=obj["id"],
        customer_id=customer,
        status=obj.get("status") or "",
        current_period_start=from_epoch(start),
        current_period_end=from_epoch(end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
    )


def parse_event(payload: dict) -> GatewayEvent:
    """
    Reduce a verified Stripe event dict to a GatewayEvent.

    Unrecognised event types come back with kind=None; callers acknowledge
    and ignore them.
    """
    event_type = payload.get("type", "")
    kind = EVENT_KINDS.get(event_type)
    obj = (payload.get("data") or {}).get("object") or {}

    event = GatewayEvent(
        event_id=payload.get("id", ""),
        event_type=event_type,
        kind=kind,
    )

    if kind in (
        EventKind.subscription_created,
        EventKind.subscription_updated,
        EventKind.subscription_deleted,
    ):
        snapshot = subscription_from_stripe(obj)
        event.external_subscription_id = snapshot.id
        event.customer_id = snapshot.customer_id
        event.status = snapshot.status
        event.current_period_start = snapshot.current_period_start
        event.current_period_end = snapshot.current_period_end
        event.cancel_at_period_end = snapshot.cancel_at_period_end

    elif kind == EventKind.invoice_paid:
        event.external_subscription_id = _invoice_subscription_id(obj)
        event.invoice_id = obj.get("id")
        event.amount = obj.get("amount_paid") or 0
        event.currency = obj.get("currency")
        event.payment_intent_id = _payment_intent_id(obj)

    elif kind == EventKind.invoice_failed:
        event.external_subscription_id = _invoice_subscription_id(obj)
        event.invoice_id = obj.get("id")
        event.amount = obj.get("amount_due") or 0
        event.currency = obj.get("currency")
        event.payment_intent_id = _payment_intent_id(obj)

    return event


def _payment_intent_id(invoice: Any) -> Optional[str]:
    pi = invoice.get("payment_intent")
    if pi is None or isinstance(pi, str):
        return pi
    return pi.get("id")
