import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Enum, DateTime, Boolean, ForeignKey, JSON,
    UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import relationship

from paywall.database import Base


class SubscriptionTier(str, enum.Enum):
    FREE = "FREE"
    PAID = "PAID"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    TRIALING = "TRIALING"
    UNPAID = "UNPAID"


class PaymentStatus(str, enum.Enum):
    succeeded = "succeeded"
    failed = "failed"


class UserAccount(Base):
    """
    Reader account holding the monthly article quota.

    Table: pw_users
    Primary key matches the identity service user_id (JWT claim).
    """
    __tablename__ = "pw_users"

    id = Column(Uuid(as_uuid=True), primary_key=True, nullable=False)

    # Quota
    articles_read_this_month = Column(Integer, default=0, nullable=False)
    monthly_article_limit = Column(Integer, default=5, nullable=False)
    last_article_reset_date = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        server_default=func.now()
    )
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        server_default=func.now()
    )

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, passive_deletes=True)


class Subscription(Base):
    """
    Local mirror of the gateway subscription.

    Table: pw_subscriptions
    One row per user. Created FREE at signup, upgraded by the synchronous
    upgrade path, afterwards mutated only by the reconciler. Never deleted.
    """
    __tablename__ = "pw_subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("pw_users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    tier = Column(Enum(SubscriptionTier), default=SubscriptionTier.FREE, nullable=False)
    status = Column(Enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    past_due_since = Column(DateTime, nullable=True)

    # Stripe foreign keys, null until first payment
    external_customer_id = Column(String(255), nullable=True)
    external_subscription_id = Column(String(255), nullable=True, unique=True)

    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        server_default=func.now()
    )
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        server_default=func.now()
    )

    user = relationship("UserAccount", back_populates="subscription")


class ArticleAccess(Base):
    """
    Access ledger: one row per (user, post) ever charged against the quota.

    Table: pw_article_access
    Survives monthly resets, so a post read once stays readable.
    """
    __tablename__ = "pw_article_access"
    __table_args__ = (
        UniqueConstraint("user_id", "post_id", name="uq_pw_article_access_user_post"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("pw_users.id", ondelete="CASCADE"),
        nullable=False
    )
    post_id = Column(String(100), nullable=False)
    accessed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Payment(Base):
    """
    Append-only payment record written from invoice events.

    Table: pw_payments
    (external_invoice_id, status) is the dedup key for redelivered invoices.
    """
    __tablename__ = "pw_payments"
    __table_args__ = (
        UniqueConstraint("external_invoice_id", "status", name="uq_pw_payments_invoice_status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("pw_users.id", ondelete="CASCADE"),
        nullable=False
    )
    subscription_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("pw_subscriptions.id", ondelete="CASCADE"),
        nullable=False
    )
    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String(10), nullable=True)
    status = Column(Enum(PaymentStatus), nullable=False)
    external_payment_id = Column(String(255), nullable=True)
    external_invoice_id = Column(String(255), nullable=True)

    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        server_default=func.now()
    )


class BillingEvent(Base):
    """
    Raw log of every verified gateway event.

    Table: pw_billing_events
    external_event_id is unique so a redelivered event is recognised.
    """
    __tablename__ = "pw_billing_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    external_subscription_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(
        DateTime,
        default=datetime.utcnow,
        server_default=func.now()
    )
