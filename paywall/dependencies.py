import hmac
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from paywall.config import settings
from paywall.services.reconciler import StateReconciler
from paywall.services.subscription_service import SubscriptionService
from paywall.stripe_client import stripe_gateway

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def _decode_user_id(token: str) -> UUID:
    """
    Extract user_id from JWT token.

    Raises 401 if token is invalid or expired.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )

        user_id = payload.get("user_id")
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing user_id"
            )

        return UUID(user_id)

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except (jwt.InvalidTokenError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}"
        )


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> UUID:
    return _decode_user_id(credentials.credentials)


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)
) -> Optional[UUID]:
    """Anonymous callers get None instead of a 401; the access gate denies them."""
    if credentials is None:
        return None
    return _decode_user_id(credentials.credentials)


async def require_cron_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)
) -> None:
    """Bearer CRON_API_KEY guard for scheduled maintenance endpoints."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not settings.cron_api_key or not hmac.compare_digest(
        credentials.credentials, settings.cron_api_key
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def get_gateway():
    """Stripe gateway; overridden in tests."""
    return stripe_gateway


def get_reconciler(gateway=Depends(get_gateway)) -> StateReconciler:
    return StateReconciler(gateway)


def get_subscription_service(
    gateway=Depends(get_gateway),
    reconciler: StateReconciler = Depends(get_reconciler),
) -> SubscriptionService:
    return SubscriptionService(gateway, reconciler)
