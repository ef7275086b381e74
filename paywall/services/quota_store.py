"""
Data access for the article quota (pw_users) and the access ledger.

Every counter change is a single UPDATE evaluated by the database, so
concurrent requests never lose an increment and a reset cannot apply twice
in one month. No commits here; callers own the transaction.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paywall.config import settings
from paywall.errors import ArticleLimitReachedError
from paywall.models import (
    ArticleAccess, Subscription, SubscriptionStatus, SubscriptionTier, UserAccount,
)

logger = logging.getLogger(__name__)


def month_start(now: datetime) -> datetime:
    """First instant of the calendar month containing `now` (UTC)."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class QuotaStore:

    async def get_account(self, db: AsyncSession, user_id: UUID) -> Optional[UserAccount]:
        return await db.get(UserAccount, user_id, populate_existing=True)

    async def ensure_account(self, db: AsyncSession, user_id: UUID) -> UserAccount:
        """
        Get or create the quota row for a user.

        A concurrent insert of the same id is absorbed by the savepoint.
        """
        account = await self.get_account(db, user_id)
        if account:
            return account

        try:
            async with db.begin_nested():
                db.add(UserAccount(
                    id=user_id,
                    articles_read_this_month=0,
                    monthly_article_limit=settings.free_article_limit,
                    last_article_reset_date=None,
                ))
            logger.info(f"✅ [Quota] provisioned account user={user_id}")
        except IntegrityError:
            logger.info(f"[Quota] account user={user_id} created concurrently")

        return await self.get_account(db, user_id)

    async def reset_if_due(self, db: AsyncSession, user_id: UUID, now: datetime) -> bool:
        """
        Zero the monthly counter if the last reset predates this month.

        Returns True when this call performed the reset. The month condition is
        part of the UPDATE, so a second caller in the same month matches no row.
        """
        result = await db.execute(
            update(UserAccount)
            .where(
                UserAccount.id == user_id,
                or_(
                    UserAccount.last_article_reset_date.is_(None),
                    UserAccount.last_article_reset_date < month_start(now),
                ),
            )
            .values(articles_read_this_month=0, last_article_reset_date=now)
            .execution_options(synchronize_session=False)
        )
        did_reset = result.rowcount > 0
        if did_reset:
            logger.info(f"🔄 [Quota] monthly reset user={user_id}")
        return did_reset

    async def reset_all_due(self, db: AsyncSession, now: datetime) -> int:
        """Monthly reset for every account without paid access. Returns rows reset."""
        paid = (
            select(Subscription.id)
            .where(
                Subscription.user_id == UserAccount.id,
                Subscription.tier == SubscriptionTier.PAID,
                or_(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    and_(
                        Subscription.status == SubscriptionStatus.CANCELED,
                        Subscription.current_period_end > now,
                    ),
                ),
            )
            .correlate(UserAccount)
            .exists()
        )
        result = await db.execute(
            update(UserAccount)
            .where(
                or_(
                    UserAccount.last_article_reset_date.is_(None),
                    UserAccount.last_article_reset_date < month_start(now),
                ),
                ~paid,
            )
            .values(articles_read_this_month=0, last_article_reset_date=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def set_limit(self, db: AsyncSession, user_id: UUID, limit: int) -> None:
        await db.execute(
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(monthly_article_limit=limit)
            .execution_options(synchronize_session=False)
        )

    async def find_entry(self, db: AsyncSession, user_id: UUID, post_id: str) -> Optional[ArticleAccess]:
        result = await db.execute(
            select(ArticleAccess).where(
                ArticleAccess.user_id == user_id,
                ArticleAccess.post_id == post_id,
            )
        )
        return result.scalar_one_or_none()

    async def has_entry(self, db: AsyncSession, user_id: UUID, post_id: str) -> bool:
        return await self.find_entry(db, user_id, post_id) is not None

    async def record(self, db: AsyncSession, user_id: UUID, post_id: str, now: datetime) -> bool:
        """
        Upsert the ledger row; charge one quota unit only on first insert.

        Returns True when a unit was charged. Losing an insert race to another
        request hits the unique constraint and counts as already recorded.

        The ledger insert and the increment share one savepoint. The increment
        only matches while the counter is below the limit; when no unit is
        left the savepoint (ledger row included) is rolled back and
        ArticleLimitReachedError is raised.
        """
        entry = await self.find_entry(db, user_id, post_id)
        if entry:
            entry.accessed_at = now
            return False

        try:
            async with db.begin_nested():
                db.add(ArticleAccess(user_id=user_id, post_id=post_id, accessed_at=now))
                await db.flush()
                charged = await db.execute(
                    update(UserAccount)
                    .where(
                        UserAccount.id == user_id,
                        UserAccount.articles_read_this_month < UserAccount.monthly_article_limit,
                    )
                    .values(articles_read_this_month=UserAccount.articles_read_this_month + 1)
                    .execution_options(synchronize_session=False)
                )
                if charged.rowcount == 0:
                    raise ArticleLimitReachedError()
        except IntegrityError:
            logger.info(f"[Quota] ledger row user={user_id} post={post_id} already recorded")
            await db.execute(
                update(ArticleAccess)
                .where(ArticleAccess.user_id == user_id, ArticleAccess.post_id == post_id)
                .values(accessed_at=now)
                .execution_options(synchronize_session=False)
            )
            return False

        return True


quota_store = QuotaStore()
