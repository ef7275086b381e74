from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paywall.models import SubscriptionStatus, SubscriptionTier


# ============ Health Schemas ============

class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "ok"
    service: str = "paywall-api"


# ============ Subscription Schemas ============

class RequestedTier(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class CreateSubscriptionRequest(BaseModel):
    """Signup (FREE) or synchronous upgrade (PAID)"""
    tier: RequestedTier
    payment_method_id: Optional[str] = Field(None, alias="paymentMethodId", max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    name: Optional[str] = Field(None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    """Local subscription row"""
    id: str
    user_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    has_paid_access: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionEnvelope(BaseModel):
    subscription: Optional[SubscriptionResponse] = None


class CheckoutRequest(BaseModel):
    """Hosted Checkout redirect targets and billing contact"""
    success_url: str = Field(..., alias="successUrl", min_length=1)
    cancel_url: str = Field(..., alias="cancelUrl", min_length=1)
    email: str = Field(..., max_length=255)
    name: Optional[str] = Field(None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class BillingPortalRequest(BaseModel):
    return_url: str = Field(..., alias="returnUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class RedirectResponse(BaseModel):
    """Stripe-hosted page to send the reader to"""
    url: str


# ============ Access Schemas ============

class AccessResponse(BaseModel):
    """Result of an article access check"""
    model_config = ConfigDict(populate_by_name=True)

    can_access: bool = Field(..., alias="canAccess")
    post_id: str = Field(..., alias="postId")
    user_id: Optional[str] = Field(None, alias="userId")
    articles_read_this_month: Optional[int] = Field(None, alias="articlesReadThisMonth")
    monthly_article_limit: Optional[int] = Field(None, alias="monthlyArticleLimit")


class RecordAccessRequest(BaseModel):
    """Render path: author of the post, so own posts are never charged"""
    author_id: Optional[UUID] = Field(None, alias="authorId")

    model_config = ConfigDict(populate_by_name=True)


class ArticleCountResponse(BaseModel):
    """Quota introspection for UI display"""
    model_config = ConfigDict(populate_by_name=True)

    articles_read_this_month: int = Field(..., alias="articlesReadThisMonth")
    monthly_article_limit: int = Field(..., alias="monthlyArticleLimit")


class ArticleResetCheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_article_reset_date: Optional[datetime] = Field(None, alias="lastArticleResetDate")


class ResetArticleCountResponse(BaseModel):
    success: bool = True
    reset: bool
    message: str


# ============ Maintenance Schemas ============

class ResetArticleCountsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    users_updated: int = Field(..., alias="usersUpdated")
    past_due_downgraded: int = Field(..., alias="pastDueDowngraded")
