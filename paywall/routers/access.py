"""
Article access router.

GET checks only (safe for banners and previews); POST is the render path
and commits the quota charge.
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.database import get_db
from paywall.dependencies import get_optional_user_id
from paywall.errors import QuotaWriteError
from paywall.schemas import AccessResponse, RecordAccessRequest
from paywall.services.access_gate import access_gate

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/posts", tags=["access"])


@router.get("/{post_id}/access", response_model=AccessResponse)
async def check_access(
    post_id: str,
    user_id: Optional[UUID] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
) -> AccessResponse:
    """Can this user read the post? Does not consume quota."""
    try:
        decision = await access_gate.decide(db, user_id, post_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [Access] check failed user={user_id} post={post_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not check access, try again"
        )

    return AccessResponse(
        can_access=decision.can_access,
        post_id=post_id,
        user_id=str(user_id) if user_id else None,
        articles_read_this_month=decision.articles_read_this_month,
        monthly_article_limit=decision.monthly_article_limit,
    )


@router.post("/{post_id}/access", response_model=AccessResponse)
async def record_access(
    post_id: str,
    request: Optional[RecordAccessRequest] = None,
    user_id: Optional[UUID] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
) -> AccessResponse:
    """
    Check and, if allowed, charge the view.

    Paid readers and the post's author are never charged. If the charge
    cannot be written the view is denied with 503.
    """
    author_id = request.author_id if request else None
    try:
        decision = await access_gate.check_and_record(db, user_id, post_id, author_id=author_id)
    except QuotaWriteError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except SQLAlchemyError as e:
        logger.error(f"❌ [Access] record failed user={user_id} post={post_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not record article access, try again"
        )

    return AccessResponse(
        can_access=decision.can_access,
        post_id=post_id,
        user_id=str(user_id) if user_id else None,
        articles_read_this_month=decision.articles_read_this_month,
        monthly_article_limit=decision.monthly_article_limit,
    )
