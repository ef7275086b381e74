from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from paywall.database import get_db
from paywall.dependencies import require_cron_key
from paywall.schemas import ResetArticleCountsResponse
from paywall.services.quota_sweep import quota_sweep

router = APIRouter(prefix="/v1/cron", tags=["cron"])
logger = logging.getLogger(__name__)


@router.get(
    "/reset-article-counts",
    response_model=ResetArticleCountsResponse,
    dependencies=[Depends(require_cron_key)],
)
async def reset_article_counts(
    db: AsyncSession = Depends(get_db),
) -> ResetArticleCountsResponse:
    """
    Scheduled at the start of each month.

    Applies the PAST_DUE grace window, then resets counters for every
    non-paying account whose last reset predates this month.
    """
    try:
        result = await quota_sweep.run(db)
    except SQLAlchemyError as e:
        logger.error(f"❌ [Sweep] failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    return ResetArticleCountsResponse(
        users_updated=result["users_updated"],
        past_due_downgraded=result["past_due_downgraded"],
    )
