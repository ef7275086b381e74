"""
Domain errors for the paywall service.

Services raise these; routers turn them into HTTPException responses.
"""
from fastapi import status


class PaywallError(Exception):
    """Base error with a stable code and the HTTP status routers should use."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class GatewayUnavailableError(PaywallError):
    """Stripe call failed or timed out (503). Safe to retry."""

    def __init__(self, message: str = "Payment gateway unavailable"):
        super().__init__(
            code="GATEWAY_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class SubscriptionNotFoundError(PaywallError):
    """No local subscription row for the user (404)."""

    def __init__(self, message: str = "Subscription not found"):
        super().__init__(
            code="SUBSCRIPTION_NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class QuotaWriteError(PaywallError):
    """Recording an article access failed and was rolled back (503)."""

    def __init__(self, message: str = "Could not record article access, try again"):
        super().__init__(
            code="QUOTA_WRITE_FAILED",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class InvalidWebhookError(PaywallError):
    """Webhook rejected at the boundary: bad signature (401) or bad payload (400)."""

    def __init__(self, message: str, status_code: int = status.HTTP_401_UNAUTHORIZED):
        super().__init__(
            code="INVALID_WEBHOOK",
            message=message,
            status_code=status_code,
        )


class PaymentDeclinedError(PaywallError):
    """Stripe rejected the payment method (402). Not retryable as-is."""

    def __init__(self, message: str = "Payment method was declined"):
        super().__init__(
            code="PAYMENT_DECLINED",
            message=message,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
        )


class ArticleLimitReachedError(PaywallError):
    """Monthly free quota already used up when the charge was written (403)."""

    def __init__(self, message: str = "Monthly article limit reached"):
        super().__init__(
            code="ARTICLE_LIMIT_REACHED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )
