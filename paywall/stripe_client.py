import asyncio
import json
import logging
from typing import Optional

import stripe

from paywall.config import settings
from paywall.errors import GatewayUnavailableError, InvalidWebhookError, PaymentDeclinedError
from paywall.services.gateway_events import GatewaySubscription, subscription_from_stripe

logger = logging.getLogger(__name__)


class StripeGateway:
    """
    Stripe command interface used by the billing service and reconciler.

    Every call is async and bounded by gateway_timeout_seconds; failures
    surface as GatewayUnavailableError so callers can retry or deny.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self._price_id = settings.stripe_price_id or None

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

        self.client = stripe.StripeClient(
            self.api_key or "sk_test_unset",
            http_client=stripe.HTTPXClient(timeout=self.timeout),
            max_network_retries=1,
        )

    async def _call(self, label: str, coro):
        """Await a Stripe coroutine with a hard deadline and uniform errors."""
        logger.info(f"🚀 [Stripe] {label}")
        try:
            result = await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"❌ [Stripe] {label} timed out after {self.timeout}s")
            raise GatewayUnavailableError(f"Stripe timed out during {label}")
        except stripe.CardError as e:
            logger.warning(f"⚠️ [Stripe] {label} declined: {e.user_message}")
            raise PaymentDeclinedError(e.user_message or "Payment method was declined")
        except stripe.StripeError as e:
            logger.error(f"❌ [Stripe] {label} failed: {e}")
            raise GatewayUnavailableError(f"Stripe error during {label}")
        logger.info(f"✅ [Stripe] {label}")
        return result

    async def create_customer(self, email: str, name: Optional[str] = None) -> str:
        params = {"email": email}
        if name:
            params["name"] = name
        customer = await self._call(
            "customers.create",
            self.client.customers.create_async(params=params),
        )
        return customer.id

    async def ensure_price(self) -> str:
        """
        Return the membership price id.

        Uses STRIPE_PRICE_ID when configured, otherwise looks for an active
        monthly price with the configured amount and creates one if missing.
        """
        if self._price_id:
            return self._price_id

        prices = await self._call(
            "prices.list",
            self.client.prices.list_async(params={"active": True, "limit": 100}),
        )
        for price in prices.data:
            if (
                price.unit_amount == settings.stripe_price_amount
                and price.recurring is not None
                and price.recurring.interval == "month"
            ):
                logger.info(f"✅ [Stripe] found existing price {price.id}")
                self._price_id = price.id
                return price.id

        product = await self._call(
            "products.create",
            self.client.products.create_async(params={"name": settings.stripe_product_name}),
        )
        price = await self._call(
            "prices.create",
            self.client.prices.create_async(params={
                "product": product.id,
                "unit_amount": settings.stripe_price_amount,
                "currency": settings.stripe_price_currency,
                "recurring": {"interval": "month"},
            }),
        )
        logger.info(f"✅ [Stripe] created price {price.id}")
        self._price_id = price.id
        return price.id

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
    ) -> GatewaySubscription:
        """Attach the payment method, make it the default, and subscribe."""
        await self._call(
            "payment_methods.attach",
            self.client.payment_methods.attach_async(
                payment_method_id, params={"customer": customer_id}
            ),
        )
        await self._call(
            "customers.update",
            self.client.customers.update_async(
                customer_id,
                params={"invoice_settings": {"default_payment_method": payment_method_id}},
            ),
        )
        subscription = await self._call(
            "subscriptions.create",
            self.client.subscriptions.create_async(params={
                "customer": customer_id,
                "items": [{"price": price_id}],
            }),
        )
        return subscription_from_stripe(subscription.to_dict())

    async def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Schedule cancellation at period end so the paid period is kept."""
        subscription = await self._call(
            "subscriptions.update(cancel_at_period_end)",
            self.client.subscriptions.update_async(
                subscription_id, params={"cancel_at_period_end": True}
            ),
        )
        return subscription_from_stripe(subscription.to_dict())

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        subscription = await self._call(
            "subscriptions.retrieve",
            self.client.subscriptions.retrieve_async(subscription_id),
        )
        return subscription_from_stripe(subscription.to_dict())

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Hosted Checkout for the membership price. Returns the redirect URL."""
        session = await self._call(
            "checkout.sessions.create",
            self.client.checkout.sessions.create_async(params={
                "customer": customer_id,
                "payment_method_types": ["card"],
                "line_items": [{"price": price_id, "quantity": 1}],
                "mode": "subscription",
                "success_url": success_url,
                "cancel_url": cancel_url,
            }),
        )
        return session.url or ""

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await self._call(
            "billing_portal.sessions.create",
            self.client.billing_portal.sessions.create_async(params={
                "customer": customer_id,
                "return_url": return_url,
            }),
        )
        return session.url


def construct_event(payload: bytes, signature: str, secret: str) -> dict:
    """
    Verify the Stripe-Signature header and return the event as a plain dict.

    Raises InvalidWebhookError: 401 for a bad signature, 400 for a body that
    is not a JSON event.
    """
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise InvalidWebhookError(f"Invalid signature: {e}")
    except ValueError as e:
        raise InvalidWebhookError(f"Invalid payload: {e}", status_code=400)
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise InvalidWebhookError("Invalid payload: expected a JSON object", status_code=400)
    return data


# Global instance
stripe_gateway = StripeGateway()
