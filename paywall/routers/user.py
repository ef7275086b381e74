from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging
from uuid import UUID

from paywall.config import settings
from paywall.database import get_db
from paywall.dependencies import get_current_user_id
from paywall.schemas import ArticleCountResponse, ArticleResetCheckResponse, ResetArticleCountResponse
from paywall.services.access_gate import access_gate
from paywall.services.quota_store import quota_store
from paywall.services.quota_sweep import quota_sweep

router = APIRouter(prefix="/v1/user", tags=["user"])
logger = logging.getLogger(__name__)


@router.get("/article-count", response_model=ArticleCountResponse)
async def get_article_count(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ArticleCountResponse:
    """
    Articles read this month and the monthly limit, for UI display.

    Falls back to the free-tier default view if the store is unavailable.
    """
    try:
        used, limit = await access_gate.get_usage(db, user_id)
    except SQLAlchemyError as e:
        logger.warning(f"⚠️ [Quota] usage lookup failed for user {user_id}: {e}")
        used, limit = 0, settings.free_article_limit

    return ArticleCountResponse(articles_read_this_month=used, monthly_article_limit=limit)


@router.get("/article-reset-check", response_model=ArticleResetCheckResponse)
async def get_article_reset_check(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ArticleResetCheckResponse:
    """Last monthly reset date for the current user."""
    account = await quota_store.get_account(db, user_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    return ArticleResetCheckResponse(last_article_reset_date=account.last_article_reset_date)


@router.post("/reset-article-count", response_model=ResetArticleCountResponse)
async def reset_article_count(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ResetArticleCountResponse:
    """
    Apply the monthly reset for the current user if it is due.

    Same check the access gate runs lazily; calling it again in the same
    month is a no-op.
    """
    account = await quota_store.get_account(db, user_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    try:
        did_reset = await quota_sweep.reset_if_due(db, user_id)
    except SQLAlchemyError as e:
        logger.error(f"❌ [Quota] reset failed for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not reset article count")

    message = "Article count reset successfully" if did_reset else "Article count is already current"
    return ResetArticleCountResponse(reset=did_reset, message=message)
