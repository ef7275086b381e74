"""
Endpoint tests against the FastAPI app on the test database with a fake gateway
"""
import hashlib
import hmac
import json
import time
from datetime import datetime
from uuid import uuid4

import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from paywall import database
from paywall.config import settings
from paywall.dependencies import get_gateway
from paywall.errors import GatewayUnavailableError
from paywall.main import app
from paywall.models import Subscription, SubscriptionStatus, SubscriptionTier, UserAccount

WEBHOOK_SECRET = "whsec_test_secret"
CRON_KEY = "cron-test-key"


@pytest.fixture
async def client(session_factory, gateway, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "cron_api_key", CRON_KEY)

    monkeypatch.setattr(database, "async_session", session_factory)
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user_id) -> dict:
    token = jwt.encode({"user_id": str(user_id)}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


async def post_webhook(client, event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return await client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret), "Content-Type": "application/json"},
    )


async def seed_paid_user(session_factory):
    user_id = uuid4()
    async with session_factory() as session:
        session.add(UserAccount(id=user_id, articles_read_this_month=0, monthly_article_limit=999999))
        session.add(Subscription(
            user_id=user_id,
            tier=SubscriptionTier.PAID,
            status=SubscriptionStatus.ACTIVE,
            cancel_at_period_end=False,
            external_customer_id="cus_123",
            external_subscription_id="sub_123",
        ))
        await session.commit()
    return user_id


# ============ Health ============

async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ============ Webhooks ============

async def test_webhook_without_signature_is_rejected(client):
    response = await client.post("/api/webhooks/stripe", content="{}")

    assert response.status_code == 401


async def test_webhook_with_bad_signature_is_rejected(client, session_factory):
    user_id = await seed_paid_user(session_factory)
    event = {
        "id": "evt_forged",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_123", "status": "canceled"}},
    }

    response = await post_webhook(client, event, secret="whsec_wrong")

    assert response.status_code == 401
    subscription = (await client.get("/api/v1/subscription", headers=auth_headers(user_id))).json()
    assert subscription["subscription"]["tier"] == "PAID"


async def test_webhook_with_invalid_payload(client):
    payload = "not json"
    response = await client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign(payload)},
    )

    assert response.status_code == 400


async def test_webhook_unrecognised_type_is_acknowledged(client):
    event = {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

    response = await post_webhook(client, event)

    assert response.status_code == 200
    assert response.json() == {"received": True, "applied": False}


async def test_webhook_updates_subscription(client, session_factory):
    user_id = await seed_paid_user(session_factory)
    period_end = int(time.time()) + 30 * 86400
    event = {
        "id": "evt_2",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_123",
            "customer": "cus_123",
            "status": "past_due",
            "current_period_start": int(time.time()),
            "current_period_end": period_end,
            "cancel_at_period_end": False,
        }},
    }

    response = await post_webhook(client, event)
    assert response.status_code == 200
    assert response.json() == {"received": True, "applied": True}

    # Redelivery is acknowledged but not applied again
    again = await post_webhook(client, event)
    assert again.json() == {"received": True, "applied": False}

    subscription = (await client.get("/api/v1/subscription", headers=auth_headers(user_id))).json()
    assert subscription["subscription"]["status"] == "PAST_DUE"
    assert subscription["subscription"]["has_paid_access"] is False


async def test_webhook_for_unknown_subscription_is_acknowledged(client):
    event = {
        "id": "evt_3",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_elsewhere", "status": "active"}},
    }

    response = await post_webhook(client, event)

    assert response.status_code == 200
    assert response.json()["applied"] is False


# ============ Article access ============

async def test_anonymous_access_is_denied(client):
    response = await client.get("/api/v1/posts/post-1/access")

    assert response.status_code == 200
    body = response.json()
    assert body["canAccess"] is False
    assert body["userId"] is None


async def test_render_charges_once_per_post(client):
    user_id = uuid4()
    headers = auth_headers(user_id)

    first = await client.post("/api/v1/posts/post-1/access", headers=headers)
    again = await client.post("/api/v1/posts/post-1/access", headers=headers)

    assert first.json()["canAccess"] is True
    assert again.json()["articlesReadThisMonth"] == 1

    count = await client.get("/api/v1/user/article-count", headers=headers)
    assert count.json() == {"articlesReadThisMonth": 1, "monthlyArticleLimit": 5}


async def test_author_reads_own_post_free(client):
    user_id = uuid4()
    headers = auth_headers(user_id)

    response = await client.post(
        "/api/v1/posts/own-post/access",
        json={"authorId": str(user_id)},
        headers=headers,
    )

    assert response.json()["canAccess"] is True
    count = await client.get("/api/v1/user/article-count", headers=headers)
    assert count.json()["articlesReadThisMonth"] == 0


async def test_sixth_post_is_denied(client):
    headers = auth_headers(uuid4())
    for i in range(5):
        await client.post(f"/api/v1/posts/post-{i}/access", headers=headers)

    response = await client.get("/api/v1/posts/post-5/access", headers=headers)

    assert response.json()["canAccess"] is False
    assert response.json()["monthlyArticleLimit"] == 5


async def test_invalid_token_is_rejected(client):
    response = await client.get(
        "/api/v1/user/article-count", headers={"Authorization": "Bearer not-a-jwt"}
    )

    assert response.status_code == 401


async def test_reset_check_for_unknown_user(client):
    response = await client.get("/api/v1/user/article-reset-check", headers=auth_headers(uuid4()))

    assert response.status_code == 404


# ============ Subscription ============

async def test_free_signup(client):
    response = await client.post("/api/v1/subscription", json={"tier": "FREE"}, headers=auth_headers(uuid4()))

    assert response.status_code == 200
    assert response.json()["subscription"]["tier"] == "FREE"


async def test_paid_upgrade_requires_payment_method(client):
    response = await client.post("/api/v1/subscription", json={"tier": "PAID"}, headers=auth_headers(uuid4()))

    assert response.status_code == 400


async def test_paid_upgrade(client):
    headers = auth_headers(uuid4())

    response = await client.post(
        "/api/v1/subscription",
        json={"tier": "PAID", "paymentMethodId": "pm_card_visa", "email": "reader@example.com"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()["subscription"]
    assert body["tier"] == "PAID"
    assert body["status"] == "ACTIVE"
    assert body["has_paid_access"] is True

    count = await client.get("/api/v1/user/article-count", headers=headers)
    assert count.json()["monthlyArticleLimit"] == 999999


async def test_paid_upgrade_gateway_down(client, gateway, caplog):
    gateway.fail_with = GatewayUnavailableError("timed out")
    headers = auth_headers(uuid4())

    response = await client.post(
        "/api/v1/subscription",
        json={"tier": "PAID", "paymentMethodId": "pm_card_visa", "email": "reader@example.com"},
        headers=headers,
    )

    assert response.status_code == 503
    current = await client.get("/api/v1/subscription", headers=headers)
    assert current.json() == {"subscription": None}
    assert "[GATEWAY_UNAVAILABLE] timed out" in caplog.text


async def test_cancel_without_subscription(client):
    response = await client.delete("/api/v1/subscription", headers=auth_headers(uuid4()))

    assert response.status_code == 404


async def test_refresh_without_subscription(client):
    response = await client.post("/api/v1/subscription/refresh", headers=auth_headers(uuid4()))

    assert response.status_code == 404


async def test_checkout_returns_stripe_url(client, gateway):
    headers = auth_headers(uuid4())

    response = await client.post(
        "/api/v1/subscription/checkout",
        json={
            "successUrl": "https://app.test/welcome",
            "cancelUrl": "https://app.test/pricing",
            "email": "reader@example.com",
        },
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.test/c/1"}
    current = (await client.get("/api/v1/subscription", headers=headers)).json()
    assert current["subscription"]["tier"] == "FREE"
    assert current["subscription"]["external_customer_id"] == "cus_1"


async def test_checkout_requires_redirect_urls(client):
    response = await client.post(
        "/api/v1/subscription/checkout",
        json={"email": "reader@example.com"},
        headers=auth_headers(uuid4()),
    )

    assert response.status_code == 422


async def test_checkout_then_webhook_upgrades_reader(client, gateway):
    user_id = uuid4()
    headers = auth_headers(user_id)
    await client.post(
        "/api/v1/subscription/checkout",
        json={
            "successUrl": "https://app.test/welcome",
            "cancelUrl": "https://app.test/pricing",
            "email": "reader@example.com",
        },
        headers=headers,
    )
    event = {
        "id": "evt_checkout",
        "type": "customer.subscription.created",
        "data": {"object": {
            "id": "sub_from_checkout",
            "customer": "cus_1",
            "status": "active",
            "current_period_start": int(time.time()),
            "current_period_end": int(time.time()) + 30 * 86400,
            "cancel_at_period_end": False,
        }},
    }

    response = await post_webhook(client, event)

    assert response.json() == {"received": True, "applied": True}
    current = (await client.get("/api/v1/subscription", headers=headers)).json()["subscription"]
    assert current["tier"] == "PAID"
    assert current["external_subscription_id"] == "sub_from_checkout"
    count = await client.get("/api/v1/user/article-count", headers=headers)
    assert count.json()["monthlyArticleLimit"] == 999999


async def test_billing_portal(client, session_factory, gateway):
    user_id = await seed_paid_user(session_factory)

    response = await client.post(
        "/api/v1/subscription/billing-portal",
        json={"returnUrl": "https://app.test/account"},
        headers=auth_headers(user_id),
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://billing.stripe.test/p/cus_123"}
    assert gateway.portals == [("cus_123", "https://app.test/account")]


async def test_billing_portal_without_subscription(client):
    response = await client.post(
        "/api/v1/subscription/billing-portal",
        json={"returnUrl": "https://app.test/account"},
        headers=auth_headers(uuid4()),
    )

    assert response.status_code == 404


# ============ Monthly reset ============

async def test_reset_article_count_when_due(client, session_factory):
    user_id = uuid4()
    async with session_factory() as session:
        session.add(UserAccount(
            id=user_id,
            articles_read_this_month=5,
            monthly_article_limit=5,
            last_article_reset_date=datetime(2020, 1, 1),
        ))
        await session.commit()
    headers = auth_headers(user_id)

    first = await client.post("/api/v1/user/reset-article-count", headers=headers)
    second = await client.post("/api/v1/user/reset-article-count", headers=headers)

    assert first.status_code == 200
    assert first.json() == {"success": True, "reset": True, "message": "Article count reset successfully"}
    assert second.json()["reset"] is False
    count = await client.get("/api/v1/user/article-count", headers=headers)
    assert count.json()["articlesReadThisMonth"] == 0


async def test_reset_article_count_for_unknown_user(client):
    response = await client.post("/api/v1/user/reset-article-count", headers=auth_headers(uuid4()))

    assert response.status_code == 404


# ============ Cron ============

async def test_cron_requires_key(client):
    missing = await client.get("/api/v1/cron/reset-article-counts")
    wrong = await client.get(
        "/api/v1/cron/reset-article-counts", headers={"Authorization": "Bearer nope"}
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401


async def test_cron_resets_counts(client):
    response = await client.get(
        "/api/v1/cron/reset-article-counts", headers={"Authorization": f"Bearer {CRON_KEY}"}
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "usersUpdated": 0, "pastDueDowngraded": 0}
